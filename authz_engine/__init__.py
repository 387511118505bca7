"""
Authorization decision engine.

Answers whether a user may perform an action, optionally against a concrete
resource, from role-based permissions, role inheritance, scoped grants and
time-boxed temporary grants. ``authz_engine.app.create_authorization_service``
builds a wired instance from settings.
"""

__version__ = "1.0.0"
