from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("instances", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="ProtocolSequence",
            fields=[
                ("id", models.CharField(default="singleton", max_length=32, primary_key=True, serialize=False)),
                ("year", models.PositiveIntegerField()),
                ("last_number", models.PositiveIntegerField(default=0)),
            ],
        ),
        migrations.CreateModel(
            name="Protocol",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("number", models.CharField(max_length=32, unique=True)),
                ("session_id", models.CharField(db_index=True, max_length=255)),
                ("contact_id", models.CharField(max_length=255)),
                ("contact_name", models.CharField(blank=True, max_length=255, null=True)),
                ("channel", models.CharField(max_length=50)),
                ("status", models.CharField(choices=[("ACTIVE", "Active"), ("ESCALATED", "Escalated"), ("IN_PROGRESS", "In progress"), ("CLOSED", "Closed")], default="ACTIVE", max_length=20)),
                ("mode", models.CharField(choices=[("AI_ONLY", "AI only"), ("MODE_A", "Human assisted"), ("MODE_B", "Human takeover")], default="AI_ONLY", max_length=20)),
                ("escalation_reason", models.TextField(blank=True, null=True)),
                ("escalated_at", models.DateTimeField(blank=True, null=True)),
                ("assigned_at", models.DateTimeField(blank=True, null=True)),
                ("closed_at", models.DateTimeField(blank=True, null=True)),
                ("closure_reason", models.CharField(blank=True, max_length=500)),
                ("closure_result", models.TextField(blank=True)),
                ("assigned_to", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="assigned_protocols", to=settings.AUTH_USER_MODEL)),
                ("closed_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="closed_protocols", to=settings.AUTH_USER_MODEL)),
                ("instance", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="protocols", to="instances.instance")),
            ],
            options={
                "ordering": ["-updated_at"],
                "indexes": [
                    models.Index(fields=["instance", "session_id", "status"], name="protocol_instance_session_idx"),
                    models.Index(fields=["instance", "contact_id"], name="protocol_instance_contact_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ProtocolMessage",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("type", models.CharField(choices=[("NOTE", "Note"), ("INTERNAL", "Internal"), ("DIRECT", "Direct")], max_length=20)),
                ("content", models.TextField()),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("protocol", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="messages", to="protocols.protocol")),
                ("user", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["created_at", "id"],
            },
        ),
        migrations.CreateModel(
            name="ProtocolAudit",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("action", models.CharField(choices=[("CREATED", "Created"), ("ESCALATED", "Escalated"), ("ASSIGNED", "Assigned"), ("MODE_CHANGED", "Mode changed"), ("TAKEOVER", "Takeover"), ("RETURNED_TO_AI", "Returned to AI"), ("NOTE_ADDED", "Note added"), ("MESSAGE_SENT", "Message sent"), ("SURVEY_SENT", "Survey sent"), ("SURVEY_ANSWERED", "Survey answered"), ("CLOSED", "Closed")], max_length=30)),
                ("details", models.JSONField(blank=True, default=dict)),
                ("actor_user", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, to=settings.AUTH_USER_MODEL)),
                ("protocol", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="audit_entries", to="protocols.protocol")),
            ],
            options={
                "ordering": ["created_at", "id"],
            },
        ),
        migrations.CreateModel(
            name="SatisfactionSurvey",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("sent_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ("rating", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("comment", models.TextField(blank=True)),
                ("answered_at", models.DateTimeField(blank=True, null=True)),
                ("protocol", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="survey", to="protocols.protocol")),
            ],
            options={
                "ordering": ["-sent_at"],
            },
        ),
        migrations.CreateModel(
            name="LearningPacket",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("escalation_reason", models.TextField()),
                ("ai_context", models.TextField()),
                ("human_response", models.TextField()),
                ("resolution", models.TextField(blank=True)),
                ("tags", models.JSONField(blank=True, default=list)),
                ("instance", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="learning_packets", to="instances.instance")),
                ("protocol", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="learning_packets", to="protocols.protocol")),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
    ]
