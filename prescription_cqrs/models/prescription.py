from tortoise import fields, models


class Prescription(models.Model):
    """Write-side aggregate root. Append-only: never updated once committed."""
    id = fields.IntField(primary_key=True)
    prescriber = fields.ForeignKeyField("models.Prescriber", related_name="prescriptions")
    patient = fields.ForeignKeyField("models.Patient", related_name="prescriptions")
    prescribed_at = fields.DatetimeField()
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "prescriptions"
        indexes = [
            ("patient_id",),     # Patient history
            ("prescriber_id",),  # Prescriber history
        ]


class PrescriptionMedication(models.Model):
    """Line item of a prescription: one medication with its schedule and dosage."""
    id = fields.IntField(primary_key=True)
    prescription = fields.ForeignKeyField("models.Prescription", related_name="medications")
    medication = fields.ForeignKeyField("models.Medication", related_name="prescription_lines")
    schedule = fields.CharField(max_length=64)  # e.g. '08:00'
    dosage = fields.CharField(max_length=64)    # e.g. '500mg'
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "prescription_medications"
        ordering = ["id"]
        indexes = [
            ("prescription_id",),
        ]
