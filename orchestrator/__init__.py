"""Durable job orchestration engine backed by a relational store."""

__version__ = "0.4.0"
