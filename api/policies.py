"""
api/policies.py -- Route policy table for the access guard.

Keyed by (HTTP method, full path template as registered on the app). Any
route not listed here requires authentication (fail closed), so a new
endpoint is never public by accident. Add an entry when adding a route.
"""

from auth.guard import ADMIN_ONLY, AUTHENTICATED, PUBLIC, RoutePolicy

API_PREFIX = "/api/v1"

ROUTE_POLICIES: dict[tuple[str, str], RoutePolicy] = {
    # Public
    ("POST", f"{API_PREFIX}/auth/register"): PUBLIC,
    ("POST", f"{API_PREFIX}/auth/login"): PUBLIC,
    ("POST", f"{API_PREFIX}/auth/refresh"): PUBLIC,
    ("POST", f"{API_PREFIX}/auth/forgot-password"): PUBLIC,
    ("POST", f"{API_PREFIX}/auth/reset-password"): PUBLIC,
    ("GET", f"{API_PREFIX}/auth/verify-email/{{token}}"): PUBLIC,
    ("GET", f"{API_PREFIX}/health"): PUBLIC,
    # Any authenticated user
    ("POST", f"{API_PREFIX}/auth/logout"): AUTHENTICATED,
    ("GET", f"{API_PREFIX}/auth/profile"): AUTHENTICATED,
    ("PUT", f"{API_PREFIX}/auth/profile"): AUTHENTICATED,
    ("POST", f"{API_PREFIX}/auth/change-password"): AUTHENTICATED,
    ("POST", f"{API_PREFIX}/auth/verify-email/resend"): AUTHENTICATED,
    # Admin only
    ("GET", f"{API_PREFIX}/auth/users"): ADMIN_ONLY,
    ("GET", f"{API_PREFIX}/auth/users/{{user_id}}"): ADMIN_ONLY,
    ("PATCH", f"{API_PREFIX}/auth/users/{{user_id}}"): ADMIN_ONLY,
    ("DELETE", f"{API_PREFIX}/auth/users/{{user_id}}"): ADMIN_ONLY,
}
