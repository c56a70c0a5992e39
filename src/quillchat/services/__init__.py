"""Settings persistence and on-disk conversation storage."""
