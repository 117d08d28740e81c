"""Triage services: dialogue, rules, fact reconciliation and handoff."""
