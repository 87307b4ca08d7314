from tortoise import fields, models


class Prescriber(models.Model):
    id = fields.IntField(primary_key=True)
    name = fields.CharField(max_length=255)
    specialty = fields.CharField(max_length=255)
    license_number = fields.CharField(max_length=32) # CRM registration
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "prescribers"
        ordering = ["name"]


class Patient(models.Model):
    id = fields.IntField(primary_key=True)
    name = fields.CharField(max_length=255)
    birth_date = fields.DateField()
    address = fields.CharField(max_length=512)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "patients"
        ordering = ["name"]


class Medication(models.Model):
    id = fields.IntField(primary_key=True)
    name = fields.CharField(max_length=255)
    description = fields.TextField()
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "medications"
        ordering = ["name"]
