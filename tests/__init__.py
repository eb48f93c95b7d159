"""
Scheduling Engine Test Suite
"""
