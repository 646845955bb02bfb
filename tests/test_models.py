"""Tests for zm.models module."""

from __future__ import annotations

import dataclasses
from pathlib import Path

import pytest

from zm.config import Config
from zm.exceptions import InvalidNameError
from zm.models import GuestIdentity, GuestSpec, validate_guest_name
from zm.network import derive_mac


class TestGuestSpec:
    def test_from_config(self):
        cfg = Config(default_memory=2048, default_vcpus=3, default_machine="pc")
        spec = GuestSpec.from_config(cfg)
        assert (spec.memory, spec.vcpus, spec.machine) == (2048, 3, "pc")
        assert spec.start is True
        assert spec.wait_for_ip is True
        assert spec.disk_size is None

    def test_overrides_skip_none(self):
        cfg = Config()
        spec = GuestSpec.from_config(cfg, memory=None, vcpus=6, image_path=Path("/img"))
        assert spec.memory == cfg.default_memory
        assert spec.vcpus == 6
        assert spec.image_path == Path("/img")

    def test_immutable(self):
        spec = GuestSpec()
        with pytest.raises(dataclasses.FrozenInstanceError):
            spec.memory = 1


class TestGuestIdentity:
    def test_from_name(self):
        identity = GuestIdentity.from_name("web")
        assert identity.name == "web"
        assert identity.mac == derive_mac("web")

    def test_empty_name(self):
        with pytest.raises(InvalidNameError):
            GuestIdentity.from_name("")


class TestValidateGuestName:
    @pytest.mark.parametrize("name", ["web", "db-01", "a.b_c", "9lives", "_scratch", "my vm", "-web"])
    def test_valid(self, name):
        assert validate_guest_name(name) == name

    @pytest.mark.parametrize("name", ["", "a/b", "/"])
    def test_invalid(self, name):
        with pytest.raises(InvalidNameError):
            validate_guest_name(name)
