"""Scheduling domain - cleaners, weekly availability, time-off and assignments"""
