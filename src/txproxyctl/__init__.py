"""
Certificate and configuration control plane for a TLS-terminating reverse
proxy, built on Twisted.
"""
__version__ = '1.0.0'
