"""HTTP workers."""
