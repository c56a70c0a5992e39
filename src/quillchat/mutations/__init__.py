"""Async mutation engine with retries and optimistic rollback, plus chat and permission mutations."""
