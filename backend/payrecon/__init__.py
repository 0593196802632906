"""
payrecon - payment gateway reconciliation engine.
"""
__version__ = "0.1.0"
