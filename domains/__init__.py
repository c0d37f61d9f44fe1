"""Business domains for the onboarding reminder service."""
