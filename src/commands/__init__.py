"""User commands. Every public module exposes a module-level ``COMMAND``."""
