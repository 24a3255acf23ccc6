from crmsync.practice.models import Appointment, CheckIn, Patient, Practitioner, Profile

__all__ = ["Profile", "Practitioner", "Patient", "Appointment", "CheckIn"]
