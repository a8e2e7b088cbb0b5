"""Lib package."""
