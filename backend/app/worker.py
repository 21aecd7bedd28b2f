import asyncio

from app.workers.indexer import main

if __name__ == "__main__":
    asyncio.run(main())
