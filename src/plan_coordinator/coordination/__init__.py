"""Optimistic task claiming, lifecycle reporting and the local coordination journal.

Agents never talk to each other directly. Every decision is taken from a fresh
read of the plan ticket, and every write is confirmed by reading it back.
"""
