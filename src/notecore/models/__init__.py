"""Data models for notecore."""
