from devserver.app import create_app

# `uvicorn main:app --port 3200` serves the layers API at http://localhost:3200/api/v1
app = create_app()
