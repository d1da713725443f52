"""CLI command groups registered on the root ``exitnode`` group."""
