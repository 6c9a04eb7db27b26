import os

# Tests run against the in-memory table backend and an in-memory SQLite database.
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ.pop("AZURE_STORAGE_CONNECTION_STRING", None)
os.environ.pop("AzureWebJobsStorage", None)
os.environ.setdefault("DEMO_BOOKING_TIMEZONE", "UTC")
