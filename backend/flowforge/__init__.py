"""
FlowForge AI - Natural Language Workflow Generator
==================================================

Turns a plain-language automation description into a platform-specific
workflow definition for n8n, Zapier, Make or Power Automate.

Freemium model:
- Every platform has a monthly free quota
- The user's primary platform (chosen during onboarding) gets the smaller quota
- Hitting a limit produces a conversion trigger and an upgrade prompt
- Pro and Enterprise subscriptions (Stripe) remove all limits
"""

__version__ = "1.0.0"
__product__ = "FlowForge AI"
