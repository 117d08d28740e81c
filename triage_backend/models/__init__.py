"""Pydantic models for the triage domain and the HTTP boundary."""
