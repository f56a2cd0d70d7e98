"""logsandbox CLI layer."""
