from django.db import migrations
from django.contrib.auth.hashers import make_password
import os


def create_admin(apps, schema_editor):
    User = apps.get_model("authentication", "User")

    username = os.environ.get("DJANGO_ADMIN_USERNAME", "admin")
    password = os.environ.get("DJANGO_ADMIN_PASSWORD")
    first_name = os.environ.get("DJANGO_ADMIN_FIRST_NAME", "Admin")

    if not password:
        return  # skip silently if no password set

    if not User.objects.filter(username=username).exists():
        User.objects.create(
            username=username,
            password=make_password(password),
            first_name=first_name,
            role="admin",
            is_staff=True,
            is_superuser=True,
        )


class Migration(migrations.Migration):

    dependencies = [
        ("authentication", "0001_initial"),
    ]

    operations = [
        migrations.RunPython(create_admin, migrations.RunPython.noop),
    ]
