"""Data models: actions, pipeline state, node record, documents, services."""
