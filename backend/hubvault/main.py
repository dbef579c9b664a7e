from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from hubvault import __version__
from hubvault.api import router

app = FastAPI(title="Personal Hub Vault", version=__version__)

# The desktop shell serves the UI from its own origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api")

@app.get("/")
def health_check():
    return {"status": "Personal Hub Vault Running"}
