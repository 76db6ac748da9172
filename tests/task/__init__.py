"""Tests for the task service."""
