"""Tests for the run state store."""
