import uvicorn  # type: ignore[import-not-found]

from .config import config


def main() -> None:
    uvicorn.run(
        "matlab_runner.main:app",
        host=str(config.SERVER.HOST),
        port=int(config.SERVER.PORT),
    )


if __name__ == "__main__":
    main()
