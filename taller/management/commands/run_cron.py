import json

from django.core.management.base import BaseCommand, CommandError

from taller.cron import JOBS, run_job


class Command(BaseCommand):
    help = "Ejecuta una tarea periodica del taller (recordatorios, vencidos, mantenimiento, resumen)."

    def add_arguments(self, parser):
        parser.add_argument("job", choices=sorted(JOBS) + ["all"])

    def handle(self, *args, **options):
        job = options["job"]
        try:
            results = run_job(job)
        except KeyError:
            raise CommandError(f"Tarea desconocida: {job}")
        for name, result in results.items():
            self.stdout.write(self.style.SUCCESS(f"{name}: {json.dumps(result, ensure_ascii=False, sort_keys=True)}"))
