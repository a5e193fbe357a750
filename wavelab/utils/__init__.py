"""Shared utilities: settings, wire types, error taxonomy and capability probing."""
