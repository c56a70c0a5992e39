"""Inbound event dispatch, session state, outbound commands and the session container."""
