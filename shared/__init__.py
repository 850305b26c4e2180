"""Helpers shared by the tracker test suite and tooling."""
