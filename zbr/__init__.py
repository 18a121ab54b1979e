"""Rolling month/week/day ZFS snapshot and borg archive rotation."""
