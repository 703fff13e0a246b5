"""Algorithms for QVI_PDE."""
