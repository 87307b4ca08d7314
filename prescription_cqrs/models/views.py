from tortoise import fields, models


class PharmacyView(models.Model):
    """
    Read model for the pharmacy worklist. Fully denormalized: one row per
    (prescription, medication) entry, written by the projector only.

    Rows are inserted, never upserted, so a redelivered event shows up as a
    duplicate row. There is intentionally no unique constraint on
    (prescription_id, medication_id) yet.
    """
    id = fields.IntField(primary_key=True)
    prescription_id = fields.IntField()
    prescribed_at = fields.DatetimeField()
    patient_id = fields.IntField()
    patient_name = fields.CharField(max_length=255)
    patient_birth_date = fields.DateField()
    medication_id = fields.IntField()
    medication_name = fields.CharField(max_length=255)
    medication_description = fields.TextField()
    schedule = fields.CharField(max_length=64)
    dosage = fields.CharField(max_length=64)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "pharmacy_view"
        indexes = [
            ("prescription_id",),
            ("prescription_id", "medication_id"),
        ]


class PatientChartView(models.Model):
    """Read model for the patient chart: pharmacy fields plus address and prescriber."""
    id = fields.IntField(primary_key=True)
    prescription_id = fields.IntField()
    prescribed_at = fields.DatetimeField()
    patient_id = fields.IntField()
    patient_name = fields.CharField(max_length=255)
    patient_birth_date = fields.DateField()
    patient_address = fields.CharField(max_length=512)
    prescriber_id = fields.IntField()
    prescriber_name = fields.CharField(max_length=255)
    prescriber_specialty = fields.CharField(max_length=255)
    prescriber_license_number = fields.CharField(max_length=32)
    medication_id = fields.IntField()
    medication_name = fields.CharField(max_length=255)
    medication_description = fields.TextField()
    schedule = fields.CharField(max_length=64)
    dosage = fields.CharField(max_length=64)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "patient_chart_view"
        indexes = [
            ("patient_id",),
            ("patient_id", "prescribed_at"),
        ]
