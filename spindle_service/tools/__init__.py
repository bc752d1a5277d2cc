"""Built-in tools. Each is registered by dotted path under `tools.registry` in config."""
