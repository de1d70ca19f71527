from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group
from django.core.management.base import BaseCommand

from taller.permissions import ROLE_DUENO, ROLE_EMPLEADO


class Command(BaseCommand):
    help = "Crea los grupos base del taller y, con --demo, usuarios de prueba."

    demo_users = [
        (ROLE_DUENO, "dueno", "dueno123!", "Dueño"),
        (ROLE_EMPLEADO, "empleado", "empleado123!", "Empleado"),
    ]

    def add_arguments(self, parser):
        parser.add_argument("--demo", action="store_true", help="Crea usuarios demo para cada rol.")

    def handle(self, *args, **options):
        groups = {}
        for name in (ROLE_DUENO, ROLE_EMPLEADO):
            group, created = Group.objects.get_or_create(name=name)
            groups[name] = group
            action = "Creado" if created else "Disponible"
            self.stdout.write(self.style.SUCCESS(f"{action} grupo '{name}'."))

        if not options["demo"]:
            return

        User = get_user_model()
        for group_name, username, password, full_name in self.demo_users:
            user, created = User.objects.get_or_create(
                username=username,
                defaults={"email": f"{username}@example.com", "is_staff": True, "first_name": full_name},
            )
            if created:
                user.set_password(password)
                user.save(update_fields=["password"])
            elif not user.is_staff:
                user.is_staff = True
                user.save(update_fields=["is_staff"])
            groups[group_name].user_set.add(user)
            note = "creado" if created else "actualizado"
            self.stdout.write(self.style.SUCCESS(f"Usuario demo '{username}' {note} y asignado a {group_name}."))
