"""Admission control service."""
