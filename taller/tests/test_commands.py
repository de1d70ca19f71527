from io import StringIO

from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group
from django.core.management import call_command
from django.test import TestCase, override_settings

from taller.permissions import ROLE_DUENO, ROLE_EMPLEADO, is_owner, is_shop_staff


class InitRolesCommandTests(TestCase):
    def test_creates_groups_only(self):
        call_command("init_roles", stdout=StringIO())
        self.assertEqual(set(Group.objects.values_list("name", flat=True)), {ROLE_DUENO, ROLE_EMPLEADO})
        self.assertFalse(get_user_model().objects.exists())

    def test_demo_users_are_idempotent(self):
        call_command("init_roles", "--demo", stdout=StringIO())
        call_command("init_roles", "--demo", stdout=StringIO())
        User = get_user_model()
        dueno = User.objects.get(username="dueno")
        empleado = User.objects.get(username="empleado")
        self.assertEqual(User.objects.count(), 2)
        self.assertTrue(is_owner(dueno))
        self.assertFalse(is_owner(empleado))
        self.assertTrue(is_shop_staff(empleado))


@override_settings(EMAIL_BACKEND="django.core.mail.backends.locmem.EmailBackend", ADMINS=[], MANAGERS=[])
class RunCronCommandTests(TestCase):
    def test_runs_single_job(self):
        out = StringIO()
        call_command("run_cron", "reminders", stdout=out)
        self.assertIn('reminders: {"failed": 0, "processed": 0, "sent": 0}', out.getvalue())

    def test_runs_all_jobs(self):
        out = StringIO()
        call_command("run_cron", "all", stdout=out)
        output = out.getvalue()
        for name in ("reminders", "overdue", "day-before", "maintenance", "owner-summary"):
            self.assertIn(f"{name}:", output)
        self.assertIn('"reason": "NO_RECIPIENTS"', output)
