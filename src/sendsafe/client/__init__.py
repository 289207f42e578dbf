"""Client module - service API, transfers, sessions and file-list sync."""
