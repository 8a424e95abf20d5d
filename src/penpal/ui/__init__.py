"""View-facing plumbing: the event bus the companion publishes on."""
