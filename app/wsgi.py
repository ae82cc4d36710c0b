from app.dms import create_app

app = create_app()
