import uvicorn

from filedrop.config import settings


def main() -> None:
    uvicorn.run("filedrop.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
