"""Logging, error and configuration utilities for statesync."""
