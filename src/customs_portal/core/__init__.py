"""Configuration types, store and error taxonomy."""
