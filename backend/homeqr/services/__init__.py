"""Attribution and analytics services used by the HTTP routers and scripts."""
