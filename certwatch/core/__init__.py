"""
Core services: certificate store, ACME client, lifecycle manager,
mode selection, nginx control and certificate watching.
"""
