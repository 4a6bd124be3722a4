"""Gateway configuration package."""
