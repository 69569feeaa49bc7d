"""Spread Controller: keeps pods spread across failure domains."""
