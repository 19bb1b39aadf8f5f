"""
Operational scripts for the Closet Billing API.

Modules:
- seed_admin_roles: Seed admin roles/permissions and grant roles to users
"""
