from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from teleroom.routers import signaling
from teleroom.config import ice_servers, settings
import logging

logging.basicConfig(level=logging.INFO)

app = FastAPI(title="Teleroom Signaling Relay")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.ALLOWED_ORIGINS),
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(signaling.router)

@app.get("/config")
async def rtc_config():
    """Expose ICE server config to the clients."""
    return {"iceServers": ice_servers(settings)}

@app.get("/health")
async def health_check():
    return {"status": "healthy", "message": "Signaling relay is running"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        ssl_certfile=settings.SSL_CERTFILE,
        ssl_keyfile=settings.SSL_KEYFILE,
    )
