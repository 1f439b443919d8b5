"""
Test support utilities for dbplane tests.

In-memory fakes for the transport layer live in :mod:`tests._support.fakes`;
nothing here opens a network connection.
"""
