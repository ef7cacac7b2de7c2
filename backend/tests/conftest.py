import os
import tempfile

TEST_DB = os.path.join(tempfile.gettempdir(), "bonhomme-test.db")

# must be set before app.settings is imported
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{TEST_DB}")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-bonhomme-suite-0123456789")
os.environ.setdefault("ORIGIN", "http://localhost:5173")
