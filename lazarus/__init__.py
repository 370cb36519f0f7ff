"""Lazarus: liveness tracking and inheritance settlement engine."""
