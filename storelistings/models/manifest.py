"""Installer details resolved from an unpackaged product's package manifest."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class InstallerInfo:
    """Everything needed to fetch and silently run an MSI/EXE installer."""

    installer_url: str
    file_name: str                 # "<PackageName>.<installer type>"
    installer_switches: str        # silent switches, may be empty
    version: str                   # manifest PackageVersion, verbatim
    installer_sha256: str = ""     # hex digest, empty when not published

    def to_dict(self) -> dict:
        return {
            "installer_url": self.installer_url,
            "file_name": self.file_name,
            "installer_switches": self.installer_switches,
            "version": self.version,
            "installer_sha256": self.installer_sha256,
        }
