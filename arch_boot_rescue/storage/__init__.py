"""Block device discovery, identity resolution and mount orchestration."""
