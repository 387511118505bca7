"""
Persistence models, document stores, the role catalogue and user grants.
"""
