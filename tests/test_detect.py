import pytest

from core.detect import StatementFormat, detect_format
from core.errors import UnrecognizedFormatError


def test_detects_paypal(paypal_csv):
    fmt = detect_format(paypal_csv({}))
    assert fmt is StatementFormat.PAYPAL
    assert fmt.source == "paypal"


def test_detects_paypal_behind_bom(paypal_csv):
    assert detect_format("\ufeff" + paypal_csv({})) is StatementFormat.PAYPAL


def test_detects_ebay_earnings(ebay_csv):
    fmt = detect_format(ebay_csv({}))
    assert fmt is StatementFormat.EBAY_EARNINGS
    assert fmt.source == "ebay"


def test_detects_ebay_earnings_by_header_alone(ebay_csv):
    text = ebay_csv({}).split("\n", 3)[3]
    assert detect_format(text) is StatementFormat.EBAY_EARNINGS


def test_detects_legacy_ebay(ebay_legacy_csv):
    assert detect_format(ebay_legacy_csv({})) is StatementFormat.EBAY_TRANSACTIONS


def test_unrecognized_names_both_families():
    with pytest.raises(UnrecognizedFormatError) as excinfo:
        detect_format("Date,Description,Amount\n01/01/2024,Coffee,-3.50\n")
    message = str(excinfo.value)
    assert "PayPal" in message
    assert "eBay" in message


def test_empty_text_is_unrecognized():
    with pytest.raises(UnrecognizedFormatError):
        detect_format("")
