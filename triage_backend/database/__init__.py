"""Persistence for sessions, submissions, documents and audit events."""
