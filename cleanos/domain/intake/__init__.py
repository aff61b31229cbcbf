"""Intake domain - Tally form submissions to quote and booking requests"""
