"""Conversation model, todo helpers, restore conversion and timeline derivation."""
