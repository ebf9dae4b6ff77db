"""
Shared building blocks for the schoolpsy apps.
"""
