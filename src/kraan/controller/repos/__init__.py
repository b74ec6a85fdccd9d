"""
Repository artifact sync.

Fetches repository artifacts, publishes them into the shared source tree
and maps repository changes to the layers that reference them.
"""
