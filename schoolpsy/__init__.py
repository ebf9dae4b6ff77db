"""
School psychology record keeping.

Core package: pluggable psychometric test modules, their lifecycle and the
generic storage of test results.
"""
