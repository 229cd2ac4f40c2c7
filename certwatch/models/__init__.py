"""
Data models for certificate bundles and proxy state.
"""
