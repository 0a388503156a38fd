"""
PagerDuty directory cache service.
"""
