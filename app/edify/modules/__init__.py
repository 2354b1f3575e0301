"""
Feature modules live under this package.

Each module owns its models, service functions and blueprints (public routes in
routes.py, permission-guarded routes in admin.py), while reusing platform
primitives (auth, RBAC, audit, storage, mail, DB session).
"""
