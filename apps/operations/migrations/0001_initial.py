import django.utils.timezone
import uuid
from django.db import migrations, models


STATUS_CHOICES = [
    ("pending", "Pending"),
    ("in_progress", "In progress"),
    ("completed", "Completed"),
    ("cancelled", "Cancelled"),
    ("verificando", "Verificando"),
    ("iniciando_provisionamento", "Iniciando provisionamento"),
    ("em_analise", "Em análise"),
]

TYPE_CHOICES = [
    ("installation", "Installation"),
    ("cto", "CTO analysis"),
    ("rma", "RMA"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Operation",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("type", models.CharField(choices=TYPE_CHOICES, max_length=20)),
                ("data", models.JSONField(default=dict)),
                ("status", models.CharField(choices=STATUS_CHOICES, default="pending", max_length=32)),
                ("technician", models.CharField(max_length=255)),
                ("technician_id", models.CharField(blank=True, db_index=True, max_length=64, null=True)),
                ("operator", models.CharField(blank=True, max_length=255, null=True)),
                ("operator_id", models.CharField(blank=True, max_length=64, null=True)),
                ("assigned_operator", models.CharField(blank=True, max_length=255, null=True)),
                ("assigned_at", models.DateTimeField(blank=True, null=True)),
                ("feedback", models.TextField(blank=True, null=True)),
                ("technician_response", models.TextField(blank=True, null=True)),
                ("completed_by", models.CharField(blank=True, max_length=255, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "db_table": "operations",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="operations_status_created_idx"),
                    models.Index(fields=["type", "status"], name="operations_type_status_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="OperationHistory",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("operation_id", models.UUIDField(db_index=True)),
                ("type", models.CharField(choices=TYPE_CHOICES, max_length=20)),
                ("data", models.JSONField(default=dict)),
                ("final_status", models.CharField(choices=STATUS_CHOICES, default="completed", max_length=32)),
                ("technician", models.CharField(max_length=255)),
                ("technician_id", models.CharField(blank=True, db_index=True, max_length=64, null=True)),
                ("operator", models.CharField(blank=True, max_length=255, null=True)),
                ("feedback", models.TextField(blank=True, null=True)),
                ("technician_response", models.TextField(blank=True, null=True)),
                ("created_at", models.DateTimeField()),
                ("completed_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "db_table": "operation_history",
                "ordering": ["-created_at"],
                "verbose_name_plural": "operation history",
            },
        ),
    ]
