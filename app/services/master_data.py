"""
Read-only clinic, unit and doctor directory.

Master data is owned by clinic-administration collaborators. The engine only
queries it; changes reach the engine as explicit schedule-changed and
unit-closed notices.
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from app.models.scheduling import Clinic, Doctor, Unit

logger = logging.getLogger(__name__)


class MasterDataDirectory:
    """Lookup contract used by the resolver and the booking service."""

    def get_clinic(self, clinic_id: str) -> Optional[Clinic]:
        raise NotImplementedError

    def get_unit(self, unit_id: str) -> Optional[Unit]:
        raise NotImplementedError

    def get_doctor(self, doctor_id: str) -> Optional[Doctor]:
        raise NotImplementedError

    def units_for_clinic(self, clinic_id: str) -> List[Unit]:
        clinic = self.get_clinic(clinic_id)
        return list(clinic.units) if clinic else []


class InMemoryMasterData(MasterDataDirectory):
    """
    Directory held in memory.

    ``upsert_clinic`` and ``upsert_doctor`` stand in for the administration
    collaborators; the engine itself never calls them.
    """

    def __init__(self, clinics: Iterable[Clinic] = (), doctors: Iterable[Doctor] = ()):
        self._clinics: Dict[str, Clinic] = {}
        self._units: Dict[str, Unit] = {}
        self._doctors: Dict[str, Doctor] = {}
        for clinic in clinics:
            self.upsert_clinic(clinic)
        for doctor in doctors:
            self.upsert_doctor(doctor)

    def upsert_clinic(self, clinic: Clinic):
        previous = self._clinics.get(clinic.id)
        if previous is not None:
            for unit in previous.units:
                self._units.pop(unit.id, None)
        self._clinics[clinic.id] = clinic
        for unit in clinic.units:
            if unit.clinic_id != clinic.id:
                raise ValueError(f"Unit {unit.id} belongs to clinic {unit.clinic_id}, not {clinic.id}")
            self._units[unit.id] = unit

    def upsert_doctor(self, doctor: Doctor):
        self._doctors[doctor.id] = doctor

    def get_clinic(self, clinic_id):
        return self._clinics.get(clinic_id)

    def get_unit(self, unit_id):
        return self._units.get(unit_id)

    def get_doctor(self, doctor_id):
        return self._doctors.get(doctor_id)


class MasterDataSnapshot(BaseModel):
    """Clinics (with their units) and doctors as exported by clinic administration."""
    clinics: List[Clinic] = Field(default_factory=list)
    doctors: List[Doctor] = Field(default_factory=list)


def load_master_data(path) -> InMemoryMasterData:
    """
    Load a MASTER_DATA_FILE snapshot into an in-memory directory.

    Raises:
        ValueError: The file has no clinics or no doctors
        pydantic.ValidationError: The file does not match the snapshot shape
    """
    snapshot = MasterDataSnapshot.model_validate_json(Path(path).read_text(encoding="utf-8"))
    if not snapshot.clinics or not snapshot.doctors:
        raise ValueError(f"Master data file {path} must list at least one clinic and one doctor")

    directory = InMemoryMasterData(clinics=snapshot.clinics, doctors=snapshot.doctors)
    logger.info(
        f"📋 Loaded master data from {path}: {len(snapshot.clinics)} clinics, "
        f"{len(snapshot.doctors)} doctors"
    )
    return directory
