"""heXcms content synchronization service."""
