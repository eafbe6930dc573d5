import uvicorn

from tokenlife_api.core.settings import settings


def main() -> None:
    uvicorn.run(
        "tokenlife_api.app:create_app",
        factory=True,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
