"""
Child records owned by a psychologist.

Only what the result store needs: who owns a child.
"""
