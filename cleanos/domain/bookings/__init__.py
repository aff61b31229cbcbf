"""Bookings domain - lifecycle state machine, schedule gate and audit trail"""
