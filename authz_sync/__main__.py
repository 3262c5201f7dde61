from authz_sync.cli import app

app()
