import uvicorn

from cosign.config import load_settings


def main():
    settings = load_settings()
    uvicorn.run("cosign.app:app", host=settings.host, port=settings.port, lifespan="on")


if __name__ == "__main__":
    main()
