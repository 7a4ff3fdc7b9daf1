"""Service layer modules for access portal business logic."""
