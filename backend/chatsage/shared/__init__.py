"""Registry, secret store and caching shared by the service and the admin CLI."""
