"""
FastAPI Backend for the Smart Chair Monitor
Main application with REST API endpoints
"""

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from config import API_HOST, API_PORT, DATABASE_URL, LOG_LEVEL, SERIAL_ENABLED
from database import ChairStore
from feed import SensorFeed
from models import (
    CurrentStatus, DailyReport, Event, ReadingAccepted, ReportListItem, SensorReading,
    SessionStats, TaskActionResult, TaskQueueView, ToggleRequest,
)
from monitor import ChairMonitor, MonitorRegistry
from serial_reader import SerialReader

logger = logging.getLogger(__name__)


# Global instances
feed = SensorFeed()
store: Optional[ChairStore] = None
registry: Optional[MonitorRegistry] = None
serial_reader: Optional[SerialReader] = None


def get_monitor(chair_id: str) -> ChairMonitor:
    if registry is None:
        raise HTTPException(status_code=503, detail="Monitor not initialized")
    return registry.get(chair_id)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    global store, registry, serial_reader

    # Startup
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting Smart Chair Monitor backend...")
    store = ChairStore.from_url(DATABASE_URL)
    registry = MonitorRegistry(store, feed)

    if SERIAL_ENABLED:
        serial_reader = SerialReader(feed)
        # The serial chair's monitor must be subscribed before data flows
        registry.get(serial_reader.chair_id)
        if serial_reader.connect():
            serial_reader.start_reading()
            logger.info("Serial reading started successfully")
        else:
            logger.warning("Could not connect to serial port. Running without live data.")

    yield

    # Shutdown
    logger.info("Shutting down...")
    if serial_reader:
        serial_reader.stop_reading()
    registry.stop_all()


# Create FastAPI app
app = FastAPI(
    title="Smart Chair Monitor API",
    description="Occupancy, sitting time and health task suggestions for sensor-equipped chairs",
    version="1.0.0",
    lifespan=lifespan
)

# Enable CORS for frontend access
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify exact origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ==================== API ENDPOINTS ====================

@app.get("/")
def root():
    """Root endpoint - API status"""
    return {
        "status": "running",
        "name": "Smart Chair Monitor API",
        "version": "1.0.0",
        "serial_connected": serial_reader.is_running if serial_reader else False,
        "chairs": registry.chair_ids() if registry else [],
    }


@app.post("/api/chairs/{chair_id}/readings", response_model=ReadingAccepted)
def push_reading(chair_id: str, reading: SensorReading):
    """
    Push one sensor reading.
    The reading is processed on the chair's worker before this returns.
    """
    monitor = get_monitor(chair_id)

    def handle() -> ReadingAccepted:
        outcome = monitor.handle_reading(reading)
        return ReadingAccepted(
            chair_id=monitor.chair_id,
            outcome=outcome,
            state=monitor.engine.state,
            position=monitor.engine.position,
        )

    return monitor.call(handle)


@app.get("/api/chairs/{chair_id}/status", response_model=CurrentStatus)
def get_current_status(chair_id: str):
    """
    Get current chair status.
    Returns state, position, posture warning, limb contacts and hydration alert.
    """
    monitor = get_monitor(chair_id)
    return monitor.call(monitor.status)


@app.get("/api/chairs/{chair_id}/stats", response_model=SessionStats)
def get_session_stats(chair_id: str):
    """Get today's sitting time and position changes"""
    monitor = get_monitor(chair_id)
    return monitor.call(monitor.session_stats)


@app.get("/api/chairs/{chair_id}/reports", response_model=List[ReportListItem])
def list_reports(chair_id: str):
    """Daily reports, newest first"""
    monitor = get_monitor(chair_id)
    return monitor.call(monitor.event_log.list_reports)


@app.get("/api/chairs/{chair_id}/reports/{date}", response_model=DailyReport)
def get_daily_report(chair_id: str, date: str, newest_first: bool = False):
    """
    Get one day's summary, events and statistics.
    Date format: YYYY-MM-DD
    """
    try:
        datetime.strptime(date, "%Y-%m-%d")
    except ValueError:
        raise HTTPException(status_code=400, detail="Date must be YYYY-MM-DD")

    monitor = get_monitor(chair_id)
    report = monitor.call(monitor.event_log.daily_report, date)
    if report is None:
        raise HTTPException(status_code=404, detail=f"No data found for {date}")

    if newest_first:
        events: List[Event] = list(reversed(report.report.events))
        report.report.events = events
    return report


@app.get("/api/chairs/{chair_id}/tasks", response_model=TaskQueueView)
def get_task_queue(chair_id: str):
    """Current task queue, phase and cooldown"""
    monitor = get_monitor(chair_id)
    return monitor.call(monitor.task_queue)


def _task_action(monitor: ChairMonitor, ok) -> TaskActionResult:
    return TaskActionResult(ok=bool(ok), queue=monitor.call(monitor.task_queue))


@app.post("/api/chairs/{chair_id}/tasks/trigger", response_model=TaskActionResult)
def trigger_tasks(chair_id: str):
    """Start a suggestion cycle now (ignored during cooldown)"""
    monitor = get_monitor(chair_id)
    return _task_action(monitor, monitor.trigger_tasks())


@app.post("/api/chairs/{chair_id}/tasks/start", response_model=TaskActionResult)
def start_task(chair_id: str):
    """Start the countdown of the suggested task"""
    monitor = get_monitor(chair_id)
    return _task_action(monitor, monitor.start_task() is not None)


@app.post("/api/chairs/{chair_id}/tasks/complete", response_model=TaskActionResult)
def complete_task(chair_id: str):
    monitor = get_monitor(chair_id)
    return _task_action(monitor, monitor.complete_task())


@app.post("/api/chairs/{chair_id}/tasks/skip", response_model=TaskActionResult)
def skip_task(chair_id: str):
    monitor = get_monitor(chair_id)
    return _task_action(monitor, monitor.skip_task())


@app.post("/api/chairs/{chair_id}/tasks/dismiss", response_model=TaskActionResult)
def dismiss_tasks(chair_id: str):
    """Drop the remaining suggestions and start the cooldown"""
    monitor = get_monitor(chair_id)
    return _task_action(monitor, monitor.dismiss_tasks())


@app.post("/api/chairs/{chair_id}/tasks/enabled", response_model=TaskQueueView)
def set_recommendations_enabled(chair_id: str, request: ToggleRequest):
    monitor = get_monitor(chair_id)
    monitor.set_recommendations_enabled(request.enabled)
    return monitor.call(monitor.task_queue)


@app.post("/api/chairs/{chair_id}/ai-mode", response_model=TaskQueueView)
def set_ai_mode(chair_id: str, request: ToggleRequest):
    """Enable or disable model-ranked suggestions"""
    monitor = get_monitor(chair_id)
    monitor.set_ai_mode(request.enabled)
    return monitor.call(monitor.task_queue)


@app.post("/api/chairs/{chair_id}/hydration/dismiss")
def dismiss_hydration(chair_id: str):
    """Dismiss the hydration alert and restart the reminder interval"""
    monitor = get_monitor(chair_id)
    return {"dismissed": monitor.dismiss_hydration()}


@app.get("/api/serial/status")
def get_serial_status():
    """Get serial connection status"""
    if serial_reader:
        return {
            "connected": serial_reader.is_running,
            "port": serial_reader.port,
            "baud_rate": serial_reader.baud_rate,
            "chair_id": serial_reader.chair_id,
            "recent_readings_count": len(serial_reader.recent_readings)
        }
    return {"connected": False, "error": "Serial reader not initialized"}


@app.post("/api/serial/reconnect")
def reconnect_serial():
    """Attempt to reconnect to serial port"""
    if serial_reader:
        serial_reader.stop_reading()
        time.sleep(1)

        if serial_reader.connect():
            serial_reader.start_reading()
            return {"success": True, "message": "Reconnected successfully"}
        else:
            return {"success": False, "message": "Failed to reconnect"}

    return {"success": False, "message": "Serial reader not initialized"}


# ==================== MAIN ====================

if __name__ == "__main__":
    import uvicorn

    print("=" * 50)
    print("Smart Chair Monitor - Backend Server")
    print("=" * 50)

    uvicorn.run(
        "main:app",
        host=API_HOST,
        port=API_PORT,
        reload=True
    )
