"""Helpers to start local redis servers and clusters for testing."""