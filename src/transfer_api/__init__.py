"""Upload authorization, completion relay and shared plumbing for media-sync."""
