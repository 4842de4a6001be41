"""Staged upload broker: grants, direct uploads and verified promotion."""
