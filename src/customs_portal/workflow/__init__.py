"""Workflow driver, recovery advisor and submission recorder."""
