import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies: list = []

    operations = [
        migrations.CreateModel(
            name="MaterializationCandidate",
            fields=[
                ("id", models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("table", models.CharField(max_length=200)),
                ("property_name", models.CharField(max_length=400)),
                ("column_name", models.CharField(blank=True, max_length=255, null=True)),
                ("score", models.FloatField(default=0.0)),
                ("usage_count", models.PositiveBigIntegerField(default=0)),
                (
                    "state",
                    models.CharField(
                        choices=[
                            ("NOT_MATERIALIZED", "Not materialized"),
                            ("PENDING", "Pending"),
                            ("MATERIALIZED", "Materialized"),
                            ("FAILED", "Failed"),
                        ],
                        default="NOT_MATERIALIZED",
                        max_length=20,
                    ),
                ),
                ("error_message", models.TextField(blank=True, null=True)),
            ],
            options={
                "indexes": [models.Index(fields=["table", "state"], name="materializer_cand_state_idx")],
            },
        ),
        migrations.AddConstraint(
            model_name="materializationcandidate",
            constraint=models.UniqueConstraint(fields=("table", "property_name"), name="unique_candidate_table_property"),
        ),
        migrations.CreateModel(
            name="BackfillJob",
            fields=[
                ("id", models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "candidate",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="backfill_job",
                        to="materializer.materializationcandidate",
                    ),
                ),
                ("table", models.CharField(max_length=200)),
                ("column_name", models.CharField(max_length=255)),
                (
                    "state",
                    models.CharField(
                        choices=[
                            ("RUNNING", "Running"),
                            ("PAUSED", "Paused"),
                            ("COMPLETED", "Completed"),
                            ("FAILED", "Failed"),
                        ],
                        default="RUNNING",
                        max_length=20,
                    ),
                ),
                ("cursor", models.CharField(blank=True, max_length=200, null=True)),
                ("partition_lower", models.CharField(blank=True, max_length=200, null=True)),
                ("partition_upper", models.CharField(blank=True, max_length=200, null=True)),
                ("attempts", models.PositiveIntegerField(default=0)),
                ("error_message", models.TextField(blank=True, null=True)),
            ],
            options={
                "indexes": [models.Index(fields=["state"], name="materializer_backfill_st_idx")],
            },
        ),
    ]
