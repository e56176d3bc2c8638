import uvicorn

from ridedispatch.config import settings


def main() -> None:
    uvicorn.run("ridedispatch.main:app", host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    main()
