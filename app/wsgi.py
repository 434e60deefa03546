from app.doclife import create_app

app = create_app()
