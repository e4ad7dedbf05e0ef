"""Business services behind the add-on billing API."""
