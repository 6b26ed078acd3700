"""Services for courier."""
