"""Pahal road-accident reporting and capture triage backend."""

__version__ = "1.0.0"
