"""HTTP routers mounted by crm.main."""
