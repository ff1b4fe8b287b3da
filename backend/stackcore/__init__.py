"""Stackcore billing API: workspace subscriptions on Stripe."""
