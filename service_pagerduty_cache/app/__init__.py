"""
PagerDuty directory cache application package.

Mirrors users, contact methods, notification rules and team membership
from the PagerDuty REST API into Redis so that repeated reads skip the
network. The cache is an optimization only: every component degrades to
the live API when the cache is disabled or failing.
"""
