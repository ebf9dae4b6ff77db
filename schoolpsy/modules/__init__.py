"""
Pluggable psychometric test modules.

Discovers module directories, tracks their lifecycle in a registry, provisions
their result tables and stores results in them through one generic store.
"""
