"""
Integration Test Suite for the Tax Engine

Covers:
- Full monthly computation from raw operation histories
- Loss carryforward across months and trade types
- Summation of per-class tax due into the report totals
- Determinism of repeated computations
- Failure isolation (oversold assets, unconfigured asset classes, malformed records)
- Yearly computation, month parsing, configuration loading and serialization
"""

import json
import os
import sys
import unittest
from datetime import datetime
from decimal import Decimal

import pandas as pd
import pytz

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from tax_engine.exceptions import ConfigurationError, ValidationError
from tax_engine.loss_manager import LossCarryforwardManager
from tax_engine.models import AssetType, Operation, TradeType
from tax_engine.tax_engine import TaxEngine, parse_month
from tax_engine.tax_rules import TaxRuleTable

TEST_RULES = {
    'stock': {
        'exemption_threshold_monthly': 20000,
        'exemption_basis': 'swing_sales',
        'swing_tax_rate': 0.15,
        'day_tax_rate': 0.20,
        'irrf_rate_swing': 0.00005,
        'irrf_rate_day': 0.01,
        'darf_code': '6015',
        'label': 'Ações',
    },
    'fii': {
        'exemption_threshold_monthly': 0,
        'swing_tax_rate': 0.20,
        'day_tax_rate': 0.20,
        'darf_code': '6800',
        'label': 'FIIs',
    },
    'crypto': {
        'exemption_threshold_monthly': 35000,
        'exemption_basis': 'total_sales',
        'swing_tax_rate': 0.15,
        'day_tax_rate': 0.15,
        'darf_code': '4600',
        'label': 'Criptomoedas',
    },
}


def make_op(op_id, kind, quantity, price, when, asset_id="PETR4", asset_type="stock", **kwargs):
    return Operation(id=op_id, asset_id=asset_id, asset_type=asset_type, kind=kind,
                     quantity=quantity, unit_price=price, date=when, **kwargs)


def loss_then_gain_history():
    """R$ 1,000 swing loss in January, R$ 1,500 swing gain in February."""
    return [
        make_op("j1", "buy", 1000, 30, datetime(2024, 1, 2, 10)),
        make_op("j2", "sell", 1000, 29, datetime(2024, 1, 20, 15)),
        make_op("f1", "buy", 1000, Decimal("21.5"), datetime(2024, 2, 1, 10), asset_id="VALE3"),
        make_op("f2", "sell", 1000, 23, datetime(2024, 2, 20, 15), asset_id="VALE3"),
    ]


def mixed_month_history():
    """March 2024 with a stock swing trade, a stock day trade and an FII sale."""
    return [
        make_op("m1", "buy", 2000, 10, datetime(2024, 3, 1, 10)),
        make_op("m2", "sell", 2000, 12, datetime(2024, 3, 15, 11)),
        make_op("m3", "buy", 100, 30, datetime(2024, 3, 20, 10), asset_id="ITUB4"),
        make_op("m4", "sell", 100, 31, datetime(2024, 3, 20, 16), asset_id="ITUB4",
                source_withheld=1),
        make_op("m5", "buy", 10, 100, datetime(2024, 3, 2, 10), asset_id="HGLG11", asset_type="fii"),
        make_op("m6", "sell", 10, 110, datetime(2024, 3, 25, 14), asset_id="HGLG11", asset_type="fii"),
    ]


class TestTaxEngine(unittest.TestCase):
    """Monthly reports computed from operation histories."""

    def setUp(self):
        self.engine = TaxEngine(TaxRuleTable.from_dict(TEST_RULES))

    def test_loss_carryforward_across_months(self):
        ops = loss_then_gain_history()

        january = self.engine.calculate_month(ops, "2024-01")
        self.assertEqual(january.accumulated_losses[AssetType.STOCK], Decimal("-1000"))
        self.assertEqual(january.summary.total_losses, Decimal("1000"))
        self.assertEqual(january.summary.tax_payable, Decimal("0"))

        february = self.engine.calculate_month(ops, 2024, 2)
        stock = february.by_type[AssetType.STOCK]
        self.assertEqual(stock.swing_trade.loss_used, Decimal("1000"))
        self.assertEqual(stock.swing_trade.taxable_base, Decimal("500"))
        self.assertEqual(stock.swing_trade.tax, Decimal("75"))
        self.assertEqual(stock.accumulated_loss_remaining, Decimal("0"))
        self.assertEqual(february.accumulated_losses[AssetType.STOCK], Decimal("0"))
        self.assertEqual(february.summary.tax_payable, Decimal("75"))
        self.assertEqual([op.operation_id for op in february.operations], ["f2"])

    def test_swing_loss_offsets_day_trade_gain(self):
        ops = loss_then_gain_history()[:2] + [
            make_op("d1", "buy", 100, 10, datetime(2024, 2, 5, 10)),
            make_op("d2", "sell", 100, 16, datetime(2024, 2, 5, 16)),
        ]
        february = self.engine.calculate_month(ops, "2024-02")
        day = february.by_type[AssetType.STOCK].day_trade

        self.assertEqual(day.net, Decimal("600"))
        self.assertEqual(day.loss_used, Decimal("600"))
        self.assertEqual(day.tax, Decimal("0"))
        self.assertEqual(february.accumulated_losses[AssetType.STOCK], Decimal("-400"))

    def test_mixed_month_totals(self):
        result = self.engine.calculate_month(mixed_month_history(), "2024-03")
        stock = result.by_type[AssetType.STOCK]
        fii = result.by_type[AssetType.FII]

        self.assertEqual(stock.swing_trade.tax, Decimal("600"))
        self.assertEqual(stock.day_trade.tax, Decimal("20"))
        self.assertEqual(stock.irrf, Decimal("1"))
        self.assertEqual(stock.tax_due, Decimal("619"))
        self.assertEqual(fii.tax_due, Decimal("20"))

        total_due = sum((d.tax_due for d in result.by_type.values()), Decimal("0"))
        self.assertEqual(result.summary.tax_payable, total_due)
        self.assertEqual(result.summary.tax_payable, Decimal("639"))
        self.assertEqual(result.summary.total_sales, Decimal("28200"))
        self.assertEqual(result.summary.darf_codes, ['6015', '6800'])
        self.assertTrue(result.summary.has_tax_due)

    def test_day_trade_classification(self):
        result = self.engine.calculate_month(mixed_month_history(), "2024-03")
        trade_types = {op.operation_id: op.trade_type for op in result.operations}

        self.assertEqual(trade_types["m2"], TradeType.SWING_TRADE)
        self.assertEqual(trade_types["m4"], TradeType.DAY_TRADE)
        self.assertEqual(trade_types["m6"], TradeType.SWING_TRADE)

    def test_exempt_month(self):
        ops = [
            make_op("1", "buy", 100, 20, datetime(2024, 3, 1)),
            make_op("2", "sell", 100, 25, datetime(2024, 3, 10)),
        ]
        result = self.engine.calculate_month(ops, "2024-03")
        swing = result.by_type[AssetType.STOCK].swing_trade

        self.assertTrue(swing.exempt)
        self.assertEqual(swing.net, Decimal("500"))
        self.assertEqual(swing.tax, Decimal("0"))
        self.assertFalse(result.summary.has_tax_due)
        self.assertEqual(result.summary.darf_codes, [])

    def test_repeated_computation_is_identical(self):
        ops = loss_then_gain_history() + mixed_month_history()

        first = self.engine.calculate_month(ops, "2024-03")
        second = self.engine.calculate_month(ops, "2024-03")

        self.assertEqual(first.to_json(), second.to_json())
        self.assertEqual(first.by_type, second.by_type)

    def test_raw_records_match_operation_objects(self):
        ops = mixed_month_history()
        records = [op.to_dict() for op in ops]

        from_objects = self.engine.calculate_month(ops, "2024-03")
        from_records = self.engine.calculate_month(records, "2024-03")

        self.assertEqual(from_objects.summary, from_records.summary)

    def test_month_without_sales(self):
        result = self.engine.calculate_month(loss_then_gain_history()[:2], "2024-05")

        self.assertEqual(result.by_type, {})
        self.assertEqual(result.operations, [])
        self.assertEqual(result.summary.total_sales, Decimal("0"))
        self.assertEqual(result.accumulated_losses[AssetType.STOCK], Decimal("-1000"))
        self.assertEqual(result.accumulated_losses[AssetType.FII], Decimal("0"))

    def test_empty_history(self):
        result = self.engine.calculate_month([], "2024-01")

        self.assertEqual(result.by_type, {})
        self.assertEqual(result.summary.tax_payable, Decimal("0"))
        self.assertEqual(result.diagnostics, [])

    def test_dividends_are_reported_separately(self):
        ops = mixed_month_history() + [
            make_op("dv", "dividend", 0, 0, datetime(2024, 3, 28), asset_id="HGLG11", asset_type="fii",
                    total_value=Decimal("11.50")),
        ]
        result = self.engine.calculate_month(ops, "2024-03")

        self.assertEqual(result.dividends, {AssetType.FII: Decimal("11.50")})
        self.assertEqual(result.by_type[AssetType.FII].tax_due, Decimal("20"))

    def test_sale_after_local_midnight_in_utc(self):
        # 02:30 UTC on April 1st is still March 31st in Sao Paulo
        ops = [
            make_op("1", "buy", 10, 10, datetime(2024, 3, 1, 10)),
            make_op("2", "sell", 10, 12, pytz.utc.localize(datetime(2024, 4, 1, 2, 30))),
        ]
        march = self.engine.calculate_month(ops, "2024-03")
        april = self.engine.calculate_month(ops, "2024-04")

        self.assertEqual([op.operation_id for op in march.operations], ["2"])
        self.assertEqual(april.operations, [])

    def test_opening_loss_balance(self):
        ops = [
            make_op("1", "buy", 1000, 22, datetime(2024, 3, 1)),
            make_op("2", "sell", 1000, 25, datetime(2024, 3, 10)),
        ]
        manager = LossCarryforwardManager(opening_balances={AssetType.STOCK: Decimal("-2000")})
        result = self.engine.calculate_month(ops, "2024-03", loss_manager=manager)
        swing = result.by_type[AssetType.STOCK].swing_trade

        self.assertEqual(swing.taxable_base, Decimal("1000"))
        self.assertEqual(swing.tax, Decimal("150"))
        self.assertEqual(manager.get_balance(AssetType.STOCK), Decimal("0"))


class TestFailureIsolation(unittest.TestCase):
    """Failures are reported without aborting the whole computation."""

    def setUp(self):
        self.engine = TaxEngine(TaxRuleTable.from_dict(TEST_RULES))

    def test_oversold_asset_excludes_its_class(self):
        ops = mixed_month_history() + [
            make_op("o1", "buy", 10, 10, datetime(2024, 3, 1), asset_id="BBAS3"),
            make_op("o2", "sell", 20, 11, datetime(2024, 3, 10), asset_id="BBAS3"),
        ]
        result = self.engine.calculate_month(ops, "2024-03")

        self.assertNotIn(AssetType.STOCK, result.by_type)
        self.assertNotIn(AssetType.STOCK, result.accumulated_losses)
        self.assertIn(AssetType.FII, result.by_type)
        self.assertEqual(result.summary.tax_payable, Decimal("20"))
        self.assertTrue(result.has_errors)

        diagnostic = result.diagnostics[0]
        self.assertEqual(diagnostic.error, 'InsufficientQuantityError')
        self.assertEqual(diagnostic.scope, 'asset')
        self.assertEqual(diagnostic.subject, 'BBAS3')
        self.assertEqual(diagnostic.month, '2024-03')

    def test_later_oversell_does_not_affect_earlier_month(self):
        ops = loss_then_gain_history() + [
            make_op("o1", "sell", 5000, 11, datetime(2024, 4, 10), asset_id="VALE3"),
        ]
        february = self.engine.calculate_month(ops, "2024-02")
        april = self.engine.calculate_month(ops, "2024-04")

        self.assertEqual(february.diagnostics, [])
        self.assertEqual(february.by_type[AssetType.STOCK].tax_due, Decimal("75"))
        self.assertEqual(len(april.diagnostics), 1)
        self.assertNotIn(AssetType.STOCK, april.by_type)

    def test_unconfigured_asset_type(self):
        ops = mixed_month_history() + [
            make_op("b1", "buy", 10, 50, datetime(2024, 3, 1), asset_id="AAPL34", asset_type="bdr"),
            make_op("b2", "sell", 10, 55, datetime(2024, 3, 12), asset_id="AAPL34", asset_type="bdr"),
        ]
        result = self.engine.calculate_month(ops, "2024-03")

        self.assertEqual(list(result.by_type), [AssetType.STOCK, AssetType.FII])
        self.assertEqual(result.summary.tax_payable, Decimal("639"))
        self.assertEqual(len(result.diagnostics), 1)
        self.assertEqual(result.diagnostics[0].error, 'ConfigurationError')
        self.assertEqual(result.diagnostics[0].subject, 'bdr')

    def test_malformed_records_are_skipped(self):
        records = [op.to_dict() for op in mixed_month_history()]
        records.append({'id': 'bad-1', 'assetId': 'PETR4', 'assetType': 'stock', 'kind': 'buy',
                        'quantity': '-5', 'unitPrice': '10', 'date': '2024-03-03'})
        records.append("not an operation")

        result = self.engine.calculate_month(records, "2024-03")

        self.assertEqual(result.summary.tax_payable, Decimal("639"))
        self.assertEqual([d.subject for d in result.diagnostics], ['bad-1', '#7'])
        self.assertTrue(all(d.error == 'ValidationError' for d in result.diagnostics))
        self.assertTrue(all(d.scope == 'operation' for d in result.diagnostics))

    def test_asset_with_conflicting_types(self):
        ops = mixed_month_history() + [
            make_op("x1", "buy", 10, 10, datetime(2024, 3, 1), asset_id="MXRF11", asset_type="fii"),
            make_op("x2", "sell", 10, 11, datetime(2024, 3, 5), asset_id="MXRF11", asset_type="stock"),
        ]
        result = self.engine.calculate_month(ops, "2024-03")

        self.assertEqual(result.by_type, {})
        self.assertEqual(result.diagnostics[0].subject, 'MXRF11')


class TestEngineApi(unittest.TestCase):
    """Month parsing, yearly reports, configuration and serialization."""

    def setUp(self):
        self.engine = TaxEngine(TaxRuleTable.from_dict(TEST_RULES))

    def test_parse_month(self):
        self.assertEqual(parse_month("2024-03"), (2024, 3))
        for invalid in ("2024-13", "2024/03", "24-03", "", "2024-3"):
            with self.assertRaises(ValidationError):
                parse_month(invalid)

    def test_invalid_target_month(self):
        with self.assertRaises(ValidationError):
            self.engine.calculate_month([], "March 2024")
        with self.assertRaises(ValidationError):
            self.engine.calculate_month([], 2024, 0)

    def test_engine_requires_rule_table(self):
        with self.assertRaises(ConfigurationError):
            TaxEngine(TEST_RULES)

    def test_calculate_year(self):
        results = self.engine.calculate_year(loss_then_gain_history() + mixed_month_history(), 2024)

        self.assertEqual(len(results), 12)
        self.assertEqual([r.month for r in results][:3], ["2024-01", "2024-02", "2024-03"])
        self.assertEqual(results[1].summary.tax_payable, Decimal("75"))
        self.assertEqual(results[2].summary.tax_payable, Decimal("639"))
        self.assertEqual(results[11].by_type, {})
        self.assertEqual(results[11].accumulated_losses[AssetType.STOCK], Decimal("0"))

    def test_calculate_months_defaults_to_sale_months(self):
        results = self.engine.calculate_months(loss_then_gain_history(), "2024-12")
        self.assertEqual(list(results), ["2024-01", "2024-02"])

    def test_requested_month_after_through(self):
        with self.assertRaises(ValidationError):
            self.engine.calculate_months([], "2024-02", months=["2024-03"])

    def test_from_config(self):
        config_path = os.path.join(os.path.dirname(__file__), '..', 'config', 'settings.yaml')
        engine = TaxEngine.from_config(config_path)

        self.assertEqual(engine.loss_offset_order, (TradeType.SWING_TRADE, TradeType.DAY_TRADE))
        self.assertIn(AssetType.ETF, engine.tax_rules)
        result = engine.calculate_month(mixed_month_history(), "2024-03")
        self.assertEqual(result.by_type[AssetType.FII].darf_code, '6800')

    def test_report_structure(self):
        result = self.engine.calculate_month(mixed_month_history(), "2024-03")
        payload = json.loads(result.to_json())

        self.assertEqual(set(payload), {'month', 'summary', 'byType', 'operations',
                                        'accumulatedLosses', 'dividends', 'diagnostics'})
        self.assertEqual(payload['month'], '2024-03')
        self.assertEqual(payload['summary']['taxPayable'], 639.0)
        self.assertEqual(payload['summary']['darfCodes'], ['6015', '6800'])
        self.assertEqual(payload['byType']['stock']['typeName'], 'Ações')
        self.assertEqual(payload['byType']['stock']['dayTrade']['tax'], 20.0)
        self.assertEqual(payload['byType']['fii']['darfCode'], '6800')
        self.assertEqual(payload['accumulatedLosses'], {'stock': 0.0, 'fii': 0.0, 'crypto': 0.0})
        self.assertEqual(len(payload['operations']), 3)
        self.assertEqual(payload['operations'][0]['date'], '2024-03-15')

    def test_report_totals_match_rounded_parts(self):
        # Each class owes R$ 10.0045 before rounding
        ops = [
            make_op("s1", "buy", 1, 100, datetime(2024, 3, 5, 10)),
            make_op("s2", "sell", 1, Decimal("150.0225"), datetime(2024, 3, 5, 16)),
            make_op("f1", "buy", 1, 100, datetime(2024, 3, 2, 10), asset_id="HGLG11", asset_type="fii"),
            make_op("f2", "sell", 1, Decimal("150.0225"), datetime(2024, 3, 20, 14),
                    asset_id="HGLG11", asset_type="fii"),
        ]
        result = self.engine.calculate_month(ops, "2024-03")
        payload = json.loads(result.to_json())

        self.assertEqual(result.by_type[AssetType.STOCK].tax_due, Decimal("10.00"))
        self.assertEqual(result.by_type[AssetType.FII].tax_due, Decimal("10.00"))
        self.assertEqual(result.summary.tax_payable, Decimal("20.00"))
        by_type_due = sum(detail['taxDue'] for detail in payload['byType'].values())
        self.assertEqual(payload['summary']['taxPayable'], by_type_due)
        self.assertEqual(payload['summary']['taxDue'], 20.0)

    def test_operations_sorted_by_date(self):
        ops = [
            make_op("a1", "buy", 10, 10, datetime(2024, 3, 1), asset_id="PETR4"),
            make_op("a2", "sell", 10, 11, datetime(2024, 3, 20), asset_id="PETR4"),
            make_op("b1", "buy", 10, 10, datetime(2024, 3, 1), asset_id="VALE3"),
            make_op("b2", "sell", 10, 12, datetime(2024, 3, 10), asset_id="VALE3"),
            make_op("c1", "buy", 10, 100, datetime(2024, 3, 1), asset_id="HGLG11", asset_type="fii"),
            make_op("c2", "sell", 10, 101, datetime(2024, 3, 10), asset_id="HGLG11", asset_type="fii"),
        ]
        result = self.engine.calculate_month(ops, "2024-03")

        self.assertEqual([op.operation_id for op in result.operations], ["b2", "c2", "a2"])
        self.assertEqual([op['operationId'] for op in result.to_dict()['operations']], ["b2", "c2", "a2"])

    def test_operations_frame(self):
        result = self.engine.calculate_month(mixed_month_history(), "2024-03")
        frame = result.operations_frame()

        self.assertIsInstance(frame, pd.DataFrame)
        self.assertEqual(len(frame), 3)
        self.assertAlmostEqual(frame['gain'].sum(), 4200.0)


if __name__ == '__main__':
    unittest.main()
