"""Split line-oriented input into chunks and run a command over each one."""

__version__ = "0.1.0"
