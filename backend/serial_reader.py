"""
Serial port reader for live chair sensor data
"""

import logging
import serial
import threading
import time
from datetime import datetime
from typing import Optional, List

from config import SERIAL_PORT, BAUD_RATE, SERIAL_CHAIR_ID
from feed import SensorFeed
from models import SensorReading

logger = logging.getLogger(__name__)


class SerialReader:
    """
    Reads CSV data from the chair's Arduino via serial port and pushes
    every parsed reading into the sensor feed.
    Runs in a separate thread to avoid blocking the main application.
    """

    def __init__(
        self,
        feed: SensorFeed,
        chair_id: str = SERIAL_CHAIR_ID,
        port: str = SERIAL_PORT,
        baud_rate: int = BAUD_RATE,
    ):
        self.feed = feed
        self.chair_id = str(chair_id)
        self.port = port
        self.baud_rate = baud_rate
        self.serial_connection: Optional[serial.Serial] = None
        self.is_running = False
        self.read_thread: Optional[threading.Thread] = None

        # Buffer for recent readings
        self.recent_readings: List[SensorReading] = []
        self.max_recent_readings = 100

    def connect(self) -> bool:
        """
        Establish connection to the serial port.
        Returns True if successful, False otherwise.
        """
        try:
            self.serial_connection = serial.Serial(
                port=self.port,
                baudrate=self.baud_rate,
                timeout=1
            )
            logger.info("Connected to %s at %s baud", self.port, self.baud_rate)

            # Wait for Arduino to reset after connection
            time.sleep(2)

            # Clear any startup messages
            self.serial_connection.reset_input_buffer()

            return True

        except serial.SerialException as e:
            logger.warning("Error connecting to %s: %s", self.port, e)
            return False

    def disconnect(self):
        """Close the serial connection"""
        if self.serial_connection and self.serial_connection.is_open:
            self.serial_connection.close()
            logger.info("Disconnected from %s", self.port)

    @staticmethod
    def parse_csv_line(line: str) -> Optional[SensorReading]:
        """
        Parse a CSV line from the Arduino.
        Expected format: [timestamp,]weight,leftArm,rightArm,leftLeg,rightLeg
        Example: 2025-12-31 14:30:15,68.4,1,1,0,1
        """
        line = line.strip()
        if not line or line.startswith(("Chair", "CSV", "-", "#")):
            return None

        parts = [p.strip() for p in line.split(",")]

        try:
            timestamp = None
            if len(parts) == 6:
                timestamp = datetime.strptime(parts[0], "%Y-%m-%d %H:%M:%S")
                parts = parts[1:]

            if len(parts) != 5:
                return None

            return SensorReading(
                weight=float(parts[0]),
                left_arm=int(parts[1]),
                right_arm=int(parts[2]),
                left_leg=int(parts[3]),
                right_leg=int(parts[4]),
                timestamp=timestamp,
            )

        except ValueError:
            # Invalid line format - skip it
            return None

    def handle_line(self, line: str) -> Optional[SensorReading]:
        """Parse one line and publish it"""
        reading = self.parse_csv_line(line)
        if reading is None:
            return None

        # Store in recent readings buffer
        self.recent_readings.append(reading)
        if len(self.recent_readings) > self.max_recent_readings:
            self.recent_readings.pop(0)

        self.feed.push(self.chair_id, reading)
        return reading

    def _read_loop(self):
        """Main reading loop - runs in separate thread"""
        logger.info("Serial reading started")

        while self.is_running:
            try:
                if self.serial_connection and self.serial_connection.in_waiting > 0:
                    line = self.serial_connection.readline().decode('utf-8', errors='ignore')
                    self.handle_line(line)
                else:
                    # Small delay to prevent busy waiting
                    time.sleep(0.05)

            except serial.SerialException as e:
                logger.warning("Error reading from serial: %s", e)
                time.sleep(0.5)

        logger.info("Serial reading stopped")

    def start_reading(self):
        """Start the background reading thread"""
        if self.is_running:
            return

        if not self.serial_connection or not self.serial_connection.is_open:
            if not self.connect():
                logger.warning("Failed to connect. Cannot start reading.")
                return

        self.is_running = True
        self.read_thread = threading.Thread(target=self._read_loop, daemon=True)
        self.read_thread.start()

    def stop_reading(self):
        """Stop the background reading thread"""
        self.is_running = False

        if self.read_thread:
            self.read_thread.join(timeout=2)

        self.disconnect()

    def get_recent_readings(self, count: int = 50) -> List[SensorReading]:
        """Get the most recent readings"""
        return self.recent_readings[-count:]


if __name__ == "__main__":
    # Test the serial reader
    feed = SensorFeed()
    reader = SerialReader(feed)

    def on_reading(reading: SensorReading):
        print(f"Received: weight {reading.weight:.1f} | "
              f"arms L{reading.left_arm} R{reading.right_arm} | legs L{reading.left_leg} R{reading.right_leg}")

    with feed.subscribe(reader.chair_id, on_reading):
        if reader.connect():
            reader.start_reading()

            try:
                print("Reading from serial port. Press Ctrl+C to stop...")
                while True:
                    time.sleep(1)
            except KeyboardInterrupt:
                print("\nStopping...")
            finally:
                reader.stop_reading()
