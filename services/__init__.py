"""Billing engine services: scheduling, dunning, reconciliation and the Stripe adapter."""
