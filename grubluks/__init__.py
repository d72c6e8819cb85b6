"""Build GRUB core images that unlock a LUKS2 /boot before loading grub.cfg."""

__version__ = "0.1.0"
