"""toolhost command-line interface: config loading, providers, terminal UI."""

__version__ = "0.1.0"
