from fastapi import FastAPI
import uvicorn

from fleet_guardian.routes import router

app = FastAPI(title="Fleet-Guardian")
app.include_router(router)

if __name__ == "__main__":
    uvicorn.run("fleet_guardian.main:app", host="0.0.0.0", port=8000, reload=False)
