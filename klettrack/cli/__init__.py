"""Klettrack command-line interface."""
