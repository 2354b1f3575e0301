from app.edify import create_app

app = create_app()
