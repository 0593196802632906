"""
In-process test doubles.
"""
