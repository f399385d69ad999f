"""Services for the installer."""
