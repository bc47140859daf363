"""Rotation math."""
