"""
Step Tracking Core - data model
"""
