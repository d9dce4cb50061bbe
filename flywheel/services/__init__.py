"""Flywheel services: cycle engine, launch reconciliation"""
