"""Unit tests and testing tools for the smartacme package."""

BASE_DOMAIN = "example.com"
TEST_EMAIL = f"smartacme@{BASE_DOMAIN}"
TEST_DIRECTORY = "https://acme.test/directory"
TEST_NAMESERVERS = ["8.8.8.8", "1.1.1.1"]
