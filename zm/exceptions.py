"""Custom exceptions for zm."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ValidationError(ManagerError):
    """Raised when user input is rejected before any workflow starts."""


class InvalidNameError(ValidationError):
    pass


class InvalidSizeError(ValidationError):
    pass


class AlreadyExistsError(ManagerError):
    pass


class GuestNotFoundError(ManagerError):
    pass


class GuestRunningError(ManagerError):
    pass


class GuestNotRunningError(ManagerError):
    pass


class ConnectError(ManagerError):
    pass


class DefineError(ManagerError):
    pass


class StartError(ManagerError):
    pass


class StopError(ManagerError):
    """Raised when a hard stop (destroy) or a shutdown request fails."""


class UndefineError(ManagerError):
    pass


class ListError(ManagerError):
    pass


class StateQueryError(ManagerError):
    pass


class SnapshotError(ManagerError):
    """Base class for snapshot operation failures."""


class SnapshotCreateError(SnapshotError):
    pass


class SnapshotRevertError(SnapshotError):
    pass


class SnapshotDeleteError(SnapshotError):
    pass


class SnapshotListError(SnapshotError):
    pass


class SnapshotNotFoundError(SnapshotError):
    pass


class ImageCopyError(ManagerError):
    pass


class PermissionChangeError(ManagerError):
    pass


class DiskResizeError(ManagerError):
    pass


class ConfigBuildError(ManagerError):
    pass


class IpNotFoundError(ManagerError):
    """Raised when address discovery exhausts its retries."""
