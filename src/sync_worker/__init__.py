"""Local Sync Worker: replicates uploaded transfers onto local disk."""
