"""
StoreGuard - authentication and access-control core for the storefront.

Sub-packages:
- auth: rate limiting, credential validators, TOTP 2FA, session
  controller, admin access guard, login orchestration
- integration: security event logging
"""

__version__ = "0.1.0"
