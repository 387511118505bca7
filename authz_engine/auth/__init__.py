"""
Permission matching, scope evaluation, role resolution, decision caching,
event publishing and the authorization facade.
"""
