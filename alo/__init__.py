"""Alô push campaign core."""
