"""Pipeline engine: command runner, session, runner."""
