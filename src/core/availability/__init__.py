"""Расчёт свободных слотов."""

from src.core.availability.service import AvailabilityService, Slot, compute_free_slots

__all__ = ["AvailabilityService", "Slot", "compute_free_slots"]
