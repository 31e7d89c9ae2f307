"""
Hardware-derived device identity.

The device itself is the credential: no registration code is needed
to know who we are. Best-effort hardware signals are labelled, sorted,
joined and hashed with SHA-256 so the same machine always produces the
same 64-character id.

Architecture:
    SignalProbe        # one capability interface
    ├── LinuxProbe     # /sys/class/dmi, /proc/cpuinfo, dmidecode
    ├── MacProbe       # ioreg, system_profiler
    ├── WindowsProbe   # wmic
    └── NullProbe      # unknown platforms

Every probe returns None for "no signal"; none of them raise.

Usage:
    identifier = HardwareIdentifier()
    identifier.generate_id()   # probes once, cached afterwards
"""

from __future__ import annotations

import getpass
import hashlib
import logging
import platform
import re
import socket
import subprocess
import sys
import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from .models import DeviceIdentity

logger = logging.getLogger("scoresync.hardware")

SIGNAL_DELIMITER = "|"
COMMAND_TIMEOUT = 5

_LABEL_NOISE = re.compile(r"\b(ProcessorId|SerialNumber|UUID)\b")
_PLACEHOLDERS = {
    "",
    "none",
    "default string",
    "to be filled by o.e.m.",
    "not specified",
    "not applicable",
    "system serial number",
    "0",
    "00000000-0000-0000-0000-000000000000",
}

_cache_lock = threading.Lock()
_cached_identity: Optional[DeviceIdentity] = None


def _clean(value: Optional[str]) -> Optional[str]:
    """Strip labels and whitespace; map vendor placeholders to None."""
    if value is None:
        return None
    value = _LABEL_NOISE.sub("", value)
    value = re.sub(r"\s+", " ", value).strip()
    if value.lower() in _PLACEHOLDERS:
        return None
    return value


def _run(args: list[str], clean: bool = True) -> Optional[str]:
    """Run a probe command and return its stdout, or None."""
    try:
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=COMMAND_TIMEOUT,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("Probe command failed: %s (%s)", args[0], exc)
        return None
    if result.returncode != 0:
        return None
    return _clean(result.stdout) if clean else result.stdout


def _read(path: str) -> Optional[str]:
    try:
        return _clean(Path(path).read_text(encoding="utf-8", errors="ignore"))
    except OSError:
        return None


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------


class SignalProbe(ABC):
    """Platform-specific source of hardware signals."""

    @abstractmethod
    def cpu_id(self) -> Optional[str]:
        """Processor identifier."""

    @abstractmethod
    def motherboard_serial(self) -> Optional[str]:
        """Baseboard serial number."""

    @abstractmethod
    def system_uuid(self) -> Optional[str]:
        """Platform (SMBIOS / IOPlatform) UUID."""

    def mac_address(self) -> Optional[str]:
        """Primary network interface address, formatted ``AA-BB-...``."""
        node = uuid.getnode()
        # Bit 40 set means Python made the address up.
        if (node >> 40) & 1:
            return None
        return "-".join(f"{(node >> shift) & 0xFF:02X}" for shift in range(40, -1, -8))

    def hostname(self) -> Optional[str]:
        try:
            return socket.gethostname() or None
        except OSError:
            return None


class LinuxProbe(SignalProbe):
    """Reads DMI data from sysfs, falling back to dmidecode."""

    def cpu_id(self) -> Optional[str]:
        try:
            for line in Path("/proc/cpuinfo").read_text(encoding="utf-8").splitlines():
                if line.lower().startswith("serial"):
                    return _clean(line.split(":", 1)[-1])
        except OSError:
            pass
        return _run(["dmidecode", "-s", "processor-version"])

    def motherboard_serial(self) -> Optional[str]:
        return _read("/sys/class/dmi/id/board_serial") or _run(
            ["dmidecode", "-s", "baseboard-serial-number"]
        )

    def system_uuid(self) -> Optional[str]:
        return _read("/sys/class/dmi/id/product_uuid") or _run(
            ["dmidecode", "-s", "system-uuid"]
        )


class MacProbe(SignalProbe):
    """Uses ioreg and system_profiler."""

    def cpu_id(self) -> Optional[str]:
        return _run(["sysctl", "-n", "machdep.cpu.brand_string"])

    def motherboard_serial(self) -> Optional[str]:
        output = _run(["system_profiler", "SPHardwareDataType"], clean=False)
        if not output:
            return None
        match = re.search(r"Serial Number \(system\):\s*(\S+)", output)
        return match.group(1) if match else None

    def system_uuid(self) -> Optional[str]:
        output = _run(["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"], clean=False)
        if not output:
            return None
        match = re.search(r'"IOPlatformUUID" = "([0-9A-Fa-f-]{36})"', output)
        return match.group(1) if match else None


class WindowsProbe(SignalProbe):
    """Uses wmic."""

    def cpu_id(self) -> Optional[str]:
        return _run(["wmic", "cpu", "get", "ProcessorId"])

    def motherboard_serial(self) -> Optional[str]:
        return _run(["wmic", "baseboard", "get", "SerialNumber"])

    def system_uuid(self) -> Optional[str]:
        return _run(["wmic", "csproduct", "get", "UUID"])


class NullProbe(SignalProbe):
    """For platforms with no known hardware sources."""

    def cpu_id(self) -> Optional[str]:
        return None

    def motherboard_serial(self) -> Optional[str]:
        return None

    def system_uuid(self) -> Optional[str]:
        return None


def select_probe(platform_name: Optional[str] = None) -> SignalProbe:
    """Pick the probe implementation for this platform."""
    name = platform_name or sys.platform
    if name.startswith("linux"):
        return LinuxProbe()
    if name == "darwin":
        return MacProbe()
    if name in ("win32", "cygwin"):
        return WindowsProbe()
    return NullProbe()


# ---------------------------------------------------------------------------
# Identifier
# ---------------------------------------------------------------------------


def _safe(fn) -> Optional[str]:
    try:
        return fn()
    except Exception as exc:
        logger.debug("Signal probe %s failed: %s", getattr(fn, "__name__", fn), exc)
        return None


def hash_signals(signals: list[str]) -> str:
    """Canonical digest: sort, join with ``|``, SHA-256 hex."""
    combined = SIGNAL_DELIMITER.join(sorted(signals))
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()


class HardwareIdentifier:
    """Generates and caches the device identity.

    The first successful generation is shared process-wide, so every
    instance returns the same id without probing again.

    Args:
        probe: Signal source. Defaults to the probe for this platform.
    """

    def __init__(self, probe: Optional[SignalProbe] = None):
        self._probe = probe or select_probe()

    def collect_signals(self) -> list[str]:
        """Gather labelled hardware signals, sorted.

        Falls back to an OS/user/architecture triple when the hardware
        yields nothing.
        """
        probes = [
            ("CPU", self._probe.cpu_id),
            ("MB", self._probe.motherboard_serial),
            ("MAC", self._probe.mac_address),
            ("HOST", self._probe.hostname),
            ("UUID", self._probe.system_uuid),
        ]
        signals = []
        for label, fn in probes:
            value = _safe(fn)
            if value:
                signals.append(f"{label}:{value}")

        if not signals:
            logger.warning("No hardware identifiers found, using system properties fallback")
            fallback = [
                ("OS", platform.system),
                ("USER", getpass.getuser),
                ("ARCH", platform.machine),
            ]
            for label, fn in fallback:
                value = _safe(fn)
                if value:
                    signals.append(f"{label}:{value}")

        return sorted(signals)

    def identity(self) -> DeviceIdentity:
        """Return the cached identity, generating it on first use."""
        global _cached_identity
        with _cache_lock:
            if _cached_identity is not None:
                return _cached_identity

            signals = self.collect_signals()
            if signals:
                identity = DeviceIdentity(
                    device_id=hash_signals(signals),
                    signals=tuple(signals),
                )
                logger.info("Generated device ID from %d hardware identifiers", len(signals))
                logger.debug("Device ID components: %s", signals)
            else:
                logger.error("No identifying signals at all; device ID will not be stable")
                identity = DeviceIdentity(
                    device_id=f"FALLBACK-{uuid.uuid4()}",
                    stable=False,
                )

            _cached_identity = identity
            return identity

    def generate_id(self) -> str:
        """The device id (hex digest, or ``FALLBACK-...`` when unstable)."""
        return self.identity().device_id

    def hardware_summary(self) -> str:
        """Human-readable description of this machine."""
        identity = self.identity()
        lines = [
            f"OS: {platform.system()} {platform.release()}",
            f"Architecture: {platform.machine()}",
            f"Hostname: {_safe(self._probe.hostname) or 'Unknown'}",
        ]
        mac = _safe(self._probe.mac_address)
        if mac:
            lines.append(f"MAC Address: {mac}")
        lines.append(f"Signals: {len(identity.signals)}")
        lines.append(f"Device ID: {identity.device_id}")
        return "\n".join(lines)


def clear_cache() -> None:
    """Forget the cached identity (tests only)."""
    global _cached_identity
    with _cache_lock:
        _cached_identity = None
