"""
Utility modules for the scheduling engine.
"""
