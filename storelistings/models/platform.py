"""Device families and CPU architectures understood by the store services."""

from __future__ import annotations

from enum import Enum


class DeviceFamily(str, Enum):
    """A Windows device family (OS target class)."""

    UNKNOWN = "Unknown"
    IOT = "Iot"
    IOT_UAP = "IoTUAP"
    SERVER = "Server"
    TEAM = "Team"
    HOLOGRAPHIC = "Holographic"
    MOBILE = "Mobile"
    CORE = "Core"
    XBOX = "Xbox"
    DESKTOP = "Desktop"
    # Applies to every device family.
    UNIVERSAL = "Universal"

    @property
    def platform_name(self) -> str:
        """``Windows.<Family>`` as sent in query strings and device attributes."""
        return f"Windows.{self.value}"

    @classmethod
    def from_name(cls, name: str) -> "DeviceFamily":
        """Parse ``"Desktop"`` or ``"windows.desktop"``; unknown names map to UNKNOWN."""
        key = name.strip().lower()
        if key.startswith("windows."):
            key = key[len("windows."):]
        for member in cls:
            if member.value.lower() == key:
                return member
        return cls.UNKNOWN

    def accepts(self, family: "DeviceFamily") -> bool:
        """Whether a target declared for *family* can be installed on ``self``."""
        return family is self or family is DeviceFamily.UNIVERSAL


class Architecture(str, Enum):
    X86 = "x86"
    X64 = "x64"
    ARM = "arm"
    ARM64 = "arm64"
    NEUTRAL = "neutral"

    @classmethod
    def from_name(cls, name: str) -> "Architecture":
        try:
            return cls(name.strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown architecture: {name!r}") from exc


# Order in which per-architecture installer versions are consulted when a
# listing has no top-level version.
_ARCH_FALLBACKS: dict[str, tuple[str, ...]] = {
    "arm64": ("arm64", "arm", "x64", "x86"),
    "x64": ("x64", "x86"),
    "x86": ("x86",),
    "arm": ("arm",),
}


def architecture_priorities(arch: str) -> tuple[str, ...]:
    key = arch.strip().lower()
    return _ARCH_FALLBACKS.get(key, (key,))
