"""Host and systemd helpers shared by steps, health checks and teardown."""
