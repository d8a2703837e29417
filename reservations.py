"""
Reservation / Table Assignment Grid

Reservation status changes go through RESERVATION_TRANSITIONS; nothing else
writes `status`. A table is held through a `table_assignments` document
keyed by (restaurant, date, time, table), so two confirmed reservations can
never hold the same slot. Leaving `confirmed` releases the slot.
"""

import logging
from typing import Dict, List, Optional, Set

from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

import config
from database import generate_id
from errors import (ConflictError, InvalidTransitionError, NotFoundError, Result, ValidationError,
                    returns_result)
from schemas import Reservation, ReservationCustomer, Table

logger = logging.getLogger(__name__)

RESERVATION_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}


def slot_key(restaurant_id: str, date: str, time: str, table_number: str) -> str:
    return f"{restaurant_id}|{date}|{time}|{table_number}"


class ReservationRequest(BaseModel):
    restaurant_id: str
    customer: ReservationCustomer
    date: str
    time: str
    guests: int
    special_requests: Optional[str] = None
    user_id: Optional[str] = None


class ReservationResult(Result):
    reservation: Optional[Reservation] = None


class Availability(BaseModel):
    available: bool
    current_bookings: int
    max_bookings: int


class TableAssignmentGrid:
    def __init__(self, store, tables: Optional[List[Table]] = None,
                 max_per_slot: int = config.MAX_RESERVATIONS_PER_SLOT):
        self.store = store
        self.tables = tables or [Table(**t) for t in config.DEFAULT_TABLES]
        self.max_per_slot = max_per_slot

    def get(self, reservation_id: str, session=None) -> Reservation:
        doc = self.store.get("reservations", reservation_id, session=session)
        if not doc:
            raise NotFoundError(f"Reservation not found: {reservation_id}")
        return Reservation(**doc)

    def for_date(self, restaurant_id: str, date: str) -> List[Reservation]:
        docs = self.store.find("reservations", {"restaurant_id": restaurant_id, "date": date}, sort=[("time", 1)])
        return [Reservation(**d) for d in docs]

    def check_availability(self, restaurant_id: str, date: str, time: str, session=None) -> Availability:
        booked = self.store.find("reservations", {
            "restaurant_id": restaurant_id,
            "date": date,
            "time": time,
            "status": {"$in": ["pending", "confirmed"]},
        }, session=session)
        return Availability(available=len(booked) < self.max_per_slot,
                            current_bookings=len(booked), max_bookings=self.max_per_slot)

    @returns_result(ReservationResult)
    def create_reservation(self, request: ReservationRequest) -> ReservationResult:
        if not request.customer.name.strip() or not request.customer.phone.strip():
            raise ValidationError("Name and phone are required", field="customer")
        try:
            reservation = Reservation(
                id=generate_id("RES"),
                restaurant_id=request.restaurant_id,
                customer=request.customer,
                date=request.date,
                time=request.time,
                guests=request.guests,
                special_requests=request.special_requests,
                user_id=request.user_id,
                is_guest=request.user_id is None,
            )
        except ValueError as exc:
            raise ValidationError(f"Invalid reservation details: {exc}") from exc

        with self.store.transaction() as session:
            # Writing the slot document makes concurrent bookings of one slot conflict
            self.store.upsert("reservation_slots", f"{request.restaurant_id}|{request.date}|{request.time}", {
                "restaurant_id": request.restaurant_id,
                "date": request.date,
                "time": request.time,
                "last_reservation_id": reservation.id,
            }, session=session)
            if not self.check_availability(request.restaurant_id, request.date, request.time,
                                           session=session).available:
                raise ConflictError(f"No tables available at {request.time} on {request.date}", field="time")
            self.store.insert("reservations", reservation, session=session)
        logger.info("reservation %s created for %s %s", reservation.id, reservation.date, reservation.time)
        return ReservationResult(reservation=self.get(reservation.id))

    def _release(self, reservation: Reservation, session):
        if reservation.table_number:
            self.store.delete("table_assignments", slot_key(
                reservation.restaurant_id, reservation.date, reservation.time, reservation.table_number),
                session=session)

    @returns_result(ReservationResult)
    def transition(self, reservation_id: str, status: str, notes: Optional[str] = None) -> ReservationResult:
        with self.store.transaction() as session:
            reservation = self.get(reservation_id, session=session)
            if status not in RESERVATION_TRANSITIONS.get(reservation.status, set()):
                raise InvalidTransitionError(
                    f"Reservation {reservation_id} cannot move from {reservation.status} to {status}")
            changes = {"status": status}
            if notes:
                changes["notes"] = notes
            if reservation.status == "confirmed":
                self._release(reservation, session)
                changes["table_number"] = None
            if not self.store.update("reservations", reservation_id, changes,
                                     expect={"status": reservation.status}, session=session):
                raise ConflictError(f"Reservation {reservation_id} was changed concurrently")
        logger.info("reservation %s: %s -> %s", reservation_id, reservation.status, status)
        return ReservationResult(reservation=self.get(reservation_id))

    @returns_result(ReservationResult)
    def assign_table(self, reservation_id: str, table_number: str) -> ReservationResult:
        if table_number not in {t.number for t in self.tables}:
            raise ValidationError(f"Unknown table {table_number}", field="table_number")

        with self.store.transaction() as session:
            reservation = self.get(reservation_id, session=session)
            if reservation.status != "confirmed":
                raise InvalidTransitionError("Tables can only be assigned to confirmed reservations")
            if reservation.table_number == table_number:
                return ReservationResult(reservation=reservation)

            key = slot_key(reservation.restaurant_id, reservation.date, reservation.time, table_number)
            try:
                self.store.insert("table_assignments", {
                    "id": key,
                    "reservation_id": reservation_id,
                    "restaurant_id": reservation.restaurant_id,
                    "date": reservation.date,
                    "time": reservation.time,
                    "table_number": table_number,
                }, session=session)
            except DuplicateKeyError as exc:
                holder = self.store.get("table_assignments", key)
                logger.warning("table %s at %s %s already held by %s", table_number, reservation.date,
                               reservation.time, holder and holder["reservation_id"])
                raise ConflictError(f"Table {table_number} is already booked at {reservation.time} on "
                                    f"{reservation.date}", field="table_number") from exc
            self._release(reservation, session)
            if not self.store.update("reservations", reservation_id, {"table_number": table_number},
                                     expect={"status": "confirmed", "table_number": reservation.table_number},
                                     session=session):
                raise ConflictError(f"Reservation {reservation_id} was changed concurrently")

        logger.info("reservation %s assigned table %s", reservation_id, table_number)
        return ReservationResult(reservation=self.get(reservation_id))

    def free_tables(self, restaurant_id: str, date: str) -> Dict[str, List[str]]:
        """Free table numbers per time slot for `date`."""
        held: Dict[str, Set[str]] = {}
        for doc in self.store.find("table_assignments", {"restaurant_id": restaurant_id, "date": date}):
            held.setdefault(doc["time"], set()).add(doc["table_number"])
        times = sorted(set(config.STANDARD_TIME_SLOTS) | {r.time for r in self.for_date(restaurant_id, date)})
        return {time: [t.number for t in self.tables if t.number not in held.get(time, set())] for time in times}
