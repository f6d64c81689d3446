import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from clinic_scheduler.core import config
from clinic_scheduler.routes import appointment_routes, availability_routes
from clinic_scheduler.services import get_coordinator, load_persisted_state

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
)

config.validate_runtime_config()

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_schedule() -> None:
    load_persisted_state(get_coordinator())
    logger.info('Scheduling engine ready (env=%s)', config.APP_ENV)


@app.get('/')
def root():
    return {'status': 'Clinic Scheduler API Running'}


app.include_router(availability_routes.router, prefix='/availability')
app.include_router(appointment_routes.router, prefix='/appointments')
