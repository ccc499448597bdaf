"""Request plumbing: cancellation and retry."""
