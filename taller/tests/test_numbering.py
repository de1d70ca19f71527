import threading

from django.db import connection
from django.test import TestCase, TransactionTestCase, skipUnlessDBFeature

from taller.models import Estimate, Invoice, Sequence
from taller.numbering import ESTIMATE_SERIES, INVOICE_SERIES, format_number, max_used_number, next_number
from taller.tests.helpers import make_vehicle


class SequenceAllocatorTests(TestCase):
    def setUp(self):
        self.vehicle = make_vehicle()
        self.client_obj = self.vehicle.current_owner

    def _estimate(self, number):
        return Estimate.objects.create(vehicle=self.vehicle, client=self.client_obj, number=number, labor_cost=100, total=100)

    def test_first_numbers_per_series(self):
        self.assertEqual(next_number(Estimate, series_key=ESTIMATE_SERIES, prefix="P-"), "P-0001")
        self.assertEqual(next_number(Invoice, series_key=INVOICE_SERIES, prefix="A-"), "A-0001")

    def test_numbers_strictly_increase(self):
        numbers = [next_number(Estimate, series_key=ESTIMATE_SERIES, prefix="P-") for _ in range(5)]
        self.assertEqual(numbers, ["P-0001", "P-0002", "P-0003", "P-0004", "P-0005"])
        self.assertEqual(len(set(numbers)), 5)

    def test_counter_behind_documents_heals(self):
        Sequence.objects.create(key=ESTIMATE_SERIES, value=2)
        self._estimate("P-0007")
        self.assertEqual(next_number(Estimate, series_key=ESTIMATE_SERIES, prefix="P-"), "P-0008")
        self.assertEqual(Sequence.objects.get(key=ESTIMATE_SERIES).value, 8)

    def test_counter_ahead_of_documents_is_kept(self):
        Sequence.objects.create(key=ESTIMATE_SERIES, value=20)
        self._estimate("P-0003")
        self.assertEqual(next_number(Estimate, series_key=ESTIMATE_SERIES, prefix="P-"), "P-0021")

    def test_max_used_ignores_other_shapes(self):
        self._estimate("P-0004")
        self._estimate("P-12")
        self._estimate("P-X9")
        self.assertEqual(max_used_number(Estimate, "P-"), 12)

    def test_format_widens_past_four_digits(self):
        self.assertEqual(format_number("A-", 7), "A-0007")
        self.assertEqual(format_number("A-", 12345), "A-12345")

    def test_interleaved_series_stay_unique(self):
        estimates, invoices = [], []
        for _ in range(10):
            estimates.append(next_number(Estimate, series_key=ESTIMATE_SERIES, prefix="P-"))
            invoices.append(next_number(Invoice, series_key=INVOICE_SERIES, prefix="A-"))
            self._estimate(estimates[-1])
        self.assertEqual(estimates, [format_number("P-", n) for n in range(1, 11)])
        self.assertEqual(invoices, [format_number("A-", n) for n in range(1, 11)])


@skipUnlessDBFeature("has_select_for_update")
class ConcurrentAllocationTests(TransactionTestCase):
    workers = 4
    per_worker = 5

    def test_parallel_callers_never_share_a_number(self):
        numbers, errors = [], []
        barrier = threading.Barrier(self.workers)

        def allocate():
            try:
                barrier.wait()
                for _ in range(self.per_worker):
                    numbers.append(next_number(Estimate, series_key=ESTIMATE_SERIES, prefix="P-"))
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=allocate) for _ in range(self.workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        total = self.workers * self.per_worker
        self.assertEqual(errors, [])
        self.assertEqual(len(set(numbers)), total)
        self.assertEqual(sorted(numbers), [format_number("P-", n) for n in range(1, total + 1)])
        self.assertEqual(Sequence.objects.get(key=ESTIMATE_SERIES).value, total)
