"""Durable storage for telemetry data"""
