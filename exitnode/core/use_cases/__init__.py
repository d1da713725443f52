"""Use cases invoked by the CLI: deploy, single steps, uninstall."""
