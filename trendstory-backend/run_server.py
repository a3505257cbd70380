import os
import uvicorn

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        # Keep stored media and the SQLite file out of the reload watcher
        reload_excludes=["media/*", "*.db"]
    )
