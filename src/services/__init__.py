"""Unlock workflow services and external integrations"""
