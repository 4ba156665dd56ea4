"""Server-rendered HTML pages. All user-supplied text goes through ``escape``."""
from __future__ import annotations

from datetime import UTC, datetime
from html import escape

from apex.schemas import SCORE_LABELS, STAGES, AssessmentRecord, Deal

_STYLE = """\
  :root{color-scheme:light dark}
  body{font-family:Inter,system-ui,sans-serif;margin:24px;max-width:900px}
  .btn{padding:10px 14px;border:1px solid #ddd;border-radius:12px;background:#fff;cursor:pointer}
  input,select,textarea{display:block;margin:6px 0 14px;padding:8px 10px;border:1px solid #ddd;border-radius:10px;width:320px}
  a{color:inherit} hr{margin:18px 0}
  ul{padding-left:18px}
"""


def layout(body: str, title: str = "Apex") -> str:
    return (
        '<!doctype html><meta charset="utf-8">'
        '<meta name="viewport" content="width=device-width,initial-scale=1">\n'
        f"<title>{escape(title)}</title>\n<style>\n{_STYLE}</style>\n{body}"
    )


def _money(value: float) -> str:
    return f"${value:,.0f}"


def _when(ts: int) -> str:
    return datetime.fromtimestamp(ts / 1000, UTC).strftime("%Y-%m-%d %H:%M UTC")


def _deal_heading(deal: Deal) -> str:
    return f"{escape(deal.title)} — {escape(deal.account)} — {_money(deal.value)}"


def login_page() -> str:
    return layout("""
<h1>Apex</h1>
<p>Dev login (no emails). Type your email and you're in.</p>
<form method="POST" action="/dev-login">
  <input name="email" type="email" placeholder="your@company.com" required>
  <button class="btn">Sign in</button>
</form>
""")


def deals_page(deals: list[Deal], email: str | None = None) -> str:
    items = []
    for d in deals:
        verdict = ""
        if d.last_tier is not None:
            verdict = f" [{escape(d.last_tier)} {d.last_score}]"
        items.append(f'<li><a href="/deal/{escape(d.deal_id)}">{_deal_heading(d)}</a>{verdict}</li>')
    stages = "".join(f"<option>{s}</option>" for s in STAGES)
    who = f"<p>Signed in as {escape(email)}</p>" if email else ""
    return layout(f"""
<form method="POST" action="/logout"><button class="btn">Logout</button></form>
{who}
<h2>My deals</h2>
<ul>{"".join(items) or "<li>No deals yet.</li>"}</ul>
<hr>
<h3>New deal</h3>
<form method="POST" action="/deal">
  <input name="account" placeholder="Account" required>
  <input name="title" placeholder="Deal title" required>
  <input name="value" type="number" min="0" step="any" placeholder="Value USD" required>
  <select name="stage">{stages}</select>
  <button class="btn">Create</button>
</form>
""", title="My deals")


def deal_page(deal: Deal, history: list[AssessmentRecord]) -> str:
    fields = "\n".join(
        f'  <label>{label} (1-5) <input name="{name}" type="number" min="1" max="5" required></label>'
        for name, label in SCORE_LABELS.items()
    )
    past = "".join(
        f'<li><a href="/assessment/{escape(deal.deal_id)}/{r.created_at}">'
        f"{_when(r.created_at)}: {r.tier} / {r.go_hold_nogo} ({r.total_score})</a></li>"
        for r in history
    )
    history_html = f"<h3>Past assessments</h3>\n<ul>{past}</ul>" if past else ""
    return layout(f"""
<a href="/deals">&larr; Back</a>
<h2>{_deal_heading(deal)}</h2>
<p>Stage: {escape(deal.stage)}</p>
<form method="POST" action="/assess">
  <input type="hidden" name="dealId" value="{escape(deal.deal_id)}">
{fields}
  <textarea name="notes" placeholder="Optional notes"></textarea>
  <button class="btn">Assess &amp; coach</button>
</form>
{history_html}
""", title=deal.title)
