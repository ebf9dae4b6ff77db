"""
Append-only audit trail of module lifecycle transitions and result mutations.
"""
