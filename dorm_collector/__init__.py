"""Dormitory electricity balance collector."""
