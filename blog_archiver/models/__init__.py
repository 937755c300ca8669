"""Data models for blog_archiver."""
