"""cryptpool-installer.

Installs a Debian based server onto LUKS encrypted disks pooled with ZFS,
with every acquired system resource tracked and released on exit.
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
