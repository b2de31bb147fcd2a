from app.qdocs import create_app

app = create_app()
