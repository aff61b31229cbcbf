"""Integrations domain - webhook routes and the inbound attempt log"""
