"""Add-on billing API: cron-triggered auto-replenish, add-on balances and Stripe webhooks."""

__version__ = "0.4.0"
