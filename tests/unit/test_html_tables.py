from __future__ import annotations

from kquote.sources.html_tables import (
    FooterTotals,
    document_text,
    footer_net_subtotal,
    footer_totals,
    parse_html,
    pick_best_table,
    scan_html_totals,
    scan_labelled_totals,
)

NAV_TABLE = """
<table>
  <tr><td>홈</td><td>쇼핑</td><td>고객센터</td></tr>
  <tr><td>로그인</td><td>회원가입</td><td>장바구니</td></tr>
  <tr><td>이벤트</td><td>공지</td><td>FAQ</td></tr>
</table>
"""

ITEM_TABLE = """
<table>
  <tr><th>상품명</th><th>규격</th><th>수량</th><th>단가</th><th>금액</th></tr>
  <tr><td>키보드</td><td>기계식</td><td>2</td><td>10,000</td><td>20,000</td></tr>
  <tr><td>배송비</td><td></td><td></td><td></td><td>3,000</td></tr>
</table>
"""

MARKETPLACE = """
<html><head><meta charset="utf-8"></head><body>
<table class="list">
  <thead><tr><th>상품명</th><th>수량</th><th>공급가액</th><th>할인금액</th><th>공급합계</th></tr></thead>
  <tbody>
    <tr><td>키보드</td><td>1</td><td>20,000</td><td>1,000</td><td>19,000</td></tr>
    <tr><td>마우스</td><td>1</td><td>13,000</td><td>1,000</td><td>12,000</td></tr>
  </tbody>
  <tfoot><tr><td>합계</td><td></td><td>33,000</td><td>2,000</td><td>31,000</td></tr></tfoot>
</table>
</body></html>
"""


def test_item_table_beats_navigation_table() -> None:
    soup = parse_html(f"<html><body>{NAV_TABLE}{ITEM_TABLE}</body></html>")
    rows = pick_best_table(soup)
    assert rows[0] == ["상품명", "규격", "수량", "단가", "금액"]
    assert rows[1][0] == "키보드"


def test_single_row_tables_are_ignored() -> None:
    soup = parse_html("<table><tr><td>상품명</td><td>금액</td></tr></table>")
    assert pick_best_table(soup) == []


def test_labelled_totals_in_text() -> None:
    found = scan_labelled_totals("총 구매금액 : 25,000원 배송비 3,000원 할인금액 -2,000원")
    assert found.grand_total == 25000
    assert found.shipping == 3000
    assert found.discount == 2000


def test_repeated_label_resolves_to_max() -> None:
    found = scan_labelled_totals("배송비 3,000 ... 배송비 3,000 ... 배송비 0")
    assert found.shipping == 3000


def test_header_label_does_not_read_next_row() -> None:
    soup = parse_html("<table><tr><td>상품</td><td>배송비</td></tr><tr><td>1200</td><td>0</td></tr></table>")
    text = document_text(soup)
    assert "¦" in text
    assert scan_labelled_totals(text).shipping is None


def test_marketplace_footer_is_read_positionally() -> None:
    soup = parse_html(MARKETPLACE)
    foot = footer_totals(soup)
    assert (foot.subtotal_before, foot.discount, foot.subtotal_after) == (33000, 2000, 31000)

    totals = scan_html_totals(soup)
    assert totals.discount == 2000
    assert totals.grand_total == 31000
    assert totals.shipping is None


def test_labelled_grand_total_beats_footer() -> None:
    html = MARKETPLACE.replace("</body>", "<p>총 구매금액 34,000원</p><p>배송비 3,000원</p></body>")
    totals = scan_html_totals(parse_html(html))
    assert totals.grand_total == 34000
    assert totals.shipping == 3000
    assert totals.discount == 2000


def test_footer_plus_shipping_without_labelled_total() -> None:
    html = MARKETPLACE.replace("</body>", "<p>배송비 3,000원</p></body>")
    totals = scan_html_totals(parse_html(html))
    assert totals.grand_total == 34000


def test_no_footer_table() -> None:
    foot = footer_totals(parse_html(ITEM_TABLE))
    assert foot.subtotal_after is None


def test_footer_without_net_subtotal_uses_before_minus_discount() -> None:
    html = MARKETPLACE.replace("<td>31,000</td></tr></tfoot>", "<td>0</td></tr></tfoot>")
    soup = parse_html(html)
    assert footer_totals(soup).subtotal_after == 0

    totals = scan_html_totals(soup)
    assert totals.discount == 2000
    assert totals.grand_total == 31000


def test_footer_net_subtotal() -> None:
    assert footer_net_subtotal(FooterTotals(33000, 2000, 31000)) == 31000
    assert footer_net_subtotal(FooterTotals(33000, None, 0)) == 33000
    assert footer_net_subtotal(FooterTotals(2000, 2000, 0)) is None
    assert footer_net_subtotal(FooterTotals()) is None
