"""Services that act on a mounted target system."""
