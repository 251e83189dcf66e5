"""Multi-tenant webhook router for declarative Telegram dialogue bots."""
