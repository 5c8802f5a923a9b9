"""Payment provider integrations: gateways, webhook handling, broker events, notifications."""
