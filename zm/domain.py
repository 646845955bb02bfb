"""Libvirt domain XML generation for zm."""

from __future__ import annotations

from pathlib import Path
from xml.dom.minidom import parseString
from xml.etree.ElementTree import Element, SubElement, tostring

from zm.constants import DEFAULT_NETWORK, DISK_IMAGE_FORMAT
from zm.models import GuestIdentity, GuestSpec
from zm.network import render_interface_xml

EMULATOR = "/usr/bin/qemu-system-x86_64"


def build_domain_xml(
    identity: GuestIdentity,
    spec: GuestSpec,
    disk_path: Path,
    config_image_path: Path,
    network: str = DEFAULT_NETWORK,
) -> str:
    """Render the complete domain definition for a guest.

    Pure: reads nothing from disk or the hypervisor. Name, memory, vCPUs,
    machine type and NIC MAC are copied verbatim from the inputs.
    """
    domain = Element("domain", type="kvm")

    SubElement(domain, "name").text = identity.name
    SubElement(domain, "memory", unit="KiB").text = str(spec.memory)
    SubElement(domain, "currentMemory", unit="KiB").text = str(spec.memory)
    SubElement(domain, "vcpu", placement="static").text = str(spec.vcpus)

    # NoCloud datasource hint for cloud-init
    sysinfo = SubElement(domain, "sysinfo", type="smbios")
    system = SubElement(sysinfo, "system")
    SubElement(system, "entry", name="serial").text = "ds=nocloud"

    # <os>
    os_el = SubElement(domain, "os")
    SubElement(os_el, "type", arch="x86_64", machine=spec.machine).text = "hvm"
    SubElement(os_el, "boot", dev="hd")
    SubElement(os_el, "smbios", mode="sysinfo")

    features = SubElement(domain, "features")
    SubElement(features, "acpi")
    SubElement(features, "apic")
    SubElement(features, "vmport", state="off")

    SubElement(domain, "cpu", mode="host-passthrough", check="none", migratable="on")

    clock = SubElement(domain, "clock", offset="utc")
    SubElement(clock, "timer", name="rtc", tickpolicy="catchup")
    SubElement(clock, "timer", name="pit", tickpolicy="delay")
    SubElement(clock, "timer", name="hpet", present="no")

    SubElement(domain, "on_poweroff").text = "destroy"
    SubElement(domain, "on_reboot").text = "restart"
    SubElement(domain, "on_crash").text = "destroy"

    pm = SubElement(domain, "pm")
    SubElement(pm, "suspend-to-mem", enabled="no")
    SubElement(pm, "suspend-to-disk", enabled="no")

    # <devices>
    devices = SubElement(domain, "devices")
    SubElement(devices, "emulator").text = EMULATOR

    disk = SubElement(devices, "disk", type="file", device="disk")
    SubElement(disk, "driver", name="qemu", type=DISK_IMAGE_FORMAT)
    SubElement(disk, "source", file=str(disk_path))
    SubElement(disk, "target", dev="vda", bus="virtio")

    seed_disk = SubElement(devices, "disk", type="file", device="cdrom")
    SubElement(seed_disk, "driver", name="qemu", type="raw")
    SubElement(seed_disk, "source", file=str(config_image_path))
    SubElement(seed_disk, "target", dev="sda", bus="sata")
    SubElement(seed_disk, "readonly")

    SubElement(devices, "controller", type="usb", index="0", model="qemu-xhci", ports="15")
    SubElement(devices, "controller", type="sata", index="0")
    SubElement(devices, "controller", type="virtio-serial", index="0")

    devices.append(render_interface_xml(identity.mac, network))

    serial = SubElement(devices, "serial", type="pty")
    serial_target = SubElement(serial, "target", type="isa-serial", port="0")
    SubElement(serial_target, "model", name="isa-serial")
    console = SubElement(devices, "console", type="pty")
    SubElement(console, "target", type="serial", port="0")

    channel_ga = SubElement(devices, "channel", type="unix")
    SubElement(channel_ga, "target", type="virtio", name="org.qemu.guest_agent.0")
    channel_spice = SubElement(devices, "channel", type="spicevmc")
    SubElement(channel_spice, "target", type="virtio", name="com.redhat.spice.0")

    SubElement(devices, "input", type="tablet", bus="usb")
    SubElement(devices, "input", type="mouse", bus="ps2")
    SubElement(devices, "input", type="keyboard", bus="ps2")

    graphics = SubElement(devices, "graphics", type="spice", autoport="yes", listen="127.0.0.1")
    SubElement(graphics, "listen", type="address", address="127.0.0.1")
    SubElement(graphics, "image", compression="off")

    video = SubElement(devices, "video")
    SubElement(video, "model", type="virtio", heads="1", primary="yes")

    SubElement(devices, "watchdog", model="itco", action="reset")
    SubElement(devices, "memballoon", model="virtio")
    rng = SubElement(devices, "rng", model="virtio")
    SubElement(rng, "backend", model="random").text = "/dev/urandom"

    raw = tostring(domain, encoding="unicode")
    return parseString(raw).toprettyxml(indent="  ").split("\n", 1)[1].rstrip()


def build_snapshot_xml(name: str) -> str:
    snapshot = Element("domainsnapshot")
    SubElement(snapshot, "name").text = name
    return tostring(snapshot, encoding="unicode")
