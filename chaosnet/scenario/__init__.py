"""
Scenario definition, scheduling and reporting.
"""
