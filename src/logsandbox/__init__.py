"""logsandbox: sandboxed WebAssembly log-source parser host."""

__version__ = "0.1.0"
