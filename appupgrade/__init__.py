"""Staged appliance upgrades in copy-on-write systemd-nspawn containers."""

__version__ = "0.1.0"
