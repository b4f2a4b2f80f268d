"""
Command-line entry point for CryptoPayLink.
"""
