"""Organization services."""
