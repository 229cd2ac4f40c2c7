"""
certwatch

Certificate lifecycle and reverse-proxy reconfiguration coordinator.
A certificate process and a proxy process cooperate through a shared
certificate directory, without any direct communication.
"""

__version__ = "0.1.0"
