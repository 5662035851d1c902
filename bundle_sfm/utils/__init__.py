"""
Utilities for camera views, quality metrics and synthetic scenes
"""
