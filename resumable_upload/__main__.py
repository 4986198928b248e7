import uvicorn

from resumable_upload.config import settings


def main() -> None:
    uvicorn.run("resumable_upload.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
