"""Payments domain - Stripe card-on-file setup, off-session charges and webhooks"""
