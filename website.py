import time
from typing import Dict, Any, List, Optional

from routes import MENU_CATEGORIES


BRAND_RED = "#9D1C20"
LOGO_PATH = "assets/Blaze PNG 3.svg"

SIDE_NAV = [
    ("home", "Home"),
    ("menu", "Menu"),
    ("hours-location", "Hours & Location"),
    ("order-online", "Order Online"),
    ("about", "About"),
    ("contact", "Contact"),
]


def safe(s: Optional[str]) -> str:
    return (s or "").replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;").replace('"', "&quot;")


def _category_label(token: str) -> str:
    if token == "og-momos":
        return "OG Momos"
    return token.replace("-", " ").title()


def _message_block(text: str, button_label: str, target: str = "home") -> str:
    return (
        '<div class="page-message" style="text-align:center;padding:2rem;">'
        f"<p>{safe(text)}</p>"
        f'<a class="retry-button" href="#{target}" '
        f'style="display:inline-block;padding:0.5rem 1rem;background:{BRAND_RED};color:white;'
        f'border-radius:4px;text-decoration:none;">{safe(button_label)}</a>'
        "</div>"
    )


def retry_html(route: str = "home") -> str:
    """Shown inside #app when a page could not be loaded."""
    return _message_block("Unable to load content. Please try again.", "Try again", target=route)


def not_found_html() -> str:
    """Body of a 404 for an unknown or missing page fragment."""
    return _message_block("Page not found. Please try again.", "Return Home")


def offline_html(version: str = "") -> str:
    """Fallback document served by the offline worker when nothing else is available."""
    stamp = f"<!-- BLAZE offline fallback v={safe(version)} -->" if version else ""
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>Blaze Restaurant (offline)</title>
  {stamp}
</head>
<body>
  <main style="font-family:sans-serif;text-align:center;padding:3rem 1rem;">
    <h1>You're offline</h1>
    <p>We couldn't reach Blaze right now. Check your connection and try again.</p>
  </main>
</body>
</html>"""


def build_index_html(version: str) -> str:
    """Single-page shell: side nav, horizontal menu nav and the #app mount point."""
    side_links = "".join(
        f'<a href="#{token}">{safe(label)}</a>' for token, label in SIDE_NAV
    )
    horizontal_items = "".join(
        f'<a class="horizontal-nav-item" href="#{token}">{safe(_category_label(token))}</a>'
        for token in MENU_CATEGORIES
    )
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>Blaze Restaurant</title>
  <link rel="manifest" href="manifest.json">
  <link rel="stylesheet" href="styles.css?v={safe(version)}">
  <!-- BLAZE_BUILD v={safe(version)} ts={int(time.time())} -->
</head>
<body>
  <header class="top-bar">
    <button class="hamburger" aria-label="Open navigation"><span></span><span></span><span></span></button>
    <img class="logo" src="{safe(LOGO_PATH)}" alt="Blaze">
  </header>
  <nav class="side-nav">{side_links}</nav>
  <nav class="horizontal-nav"><div class="nav-container">{horizontal_items}</div></nav>
  <div id="loading-indicator" style="display:none;">Loading…</div>
  <main id="app"></main>
  <script src="version.js?v={safe(version)}"></script>
  <script src="script.js?v={safe(version)}"></script>
</body>
</html>"""


def build_admin_html(rows: List[Dict[str, Any]], *, total: int, page: int, per_page: int) -> str:
    """Contact submissions listing, newest first."""
    pages = max(1, (total + per_page - 1) // per_page)

    def _when(raw: Any) -> str:
        try:
            return time.strftime("%b %d, %Y %I:%M %p", time.localtime(float(raw)))
        except (TypeError, ValueError):
            return safe(str(raw or ""))

    body_rows = "".join(
        f"""
        <tr data-id="{int(r['id'])}">
          <td>{int(r['id'])}</td>
          <td>{safe(r.get('name'))}</td>
          <td>{safe(r.get('email'))}</td>
          <td>{safe(r.get('phone'))}</td>
          <td>{safe(r.get('inquiry_type'))}</td>
          <td class="message">{safe(r.get('message'))}</td>
          <td class="timestamp">{_when(r.get('created_at'))}</td>
          <td><button class="delete-btn" data-id="{int(r['id'])}">Delete</button></td>
        </tr>"""
        for r in rows
    )
    if not rows:
        body_rows = '<tr><td colspan="8" class="empty">No submissions yet.</td></tr>'

    pager = "".join(
        f'<a class="page-link{" active" if n == page else ""}" href="?page={n}">{n}</a>'
        for n in range(1, pages + 1)
    )
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>Blaze Restaurant · Contact Submissions</title>
</head>
<body>
  <h1>Contact Form Submissions</h1>
  <p class="total">Total submissions: <span id="total-count">{total}</span></p>
  <table>
    <thead><tr><th>ID</th><th>Name</th><th>Email</th><th>Phone</th><th>Inquiry</th><th>Message</th><th>Date</th><th></th></tr></thead>
    <tbody>{body_rows}</tbody>
  </table>
  <div class="pagination">{pager}</div>
  <script>
  document.querySelectorAll('.delete-btn').forEach(btn => btn.addEventListener('click', () => {{
    if (!confirm('Delete this submission?')) return;
    fetch('/admin/submissions/delete', {{method: 'POST', headers: {{'Content-Type': 'application/json'}},
                      body: JSON.stringify({{id: btn.dataset.id}})}})
      .then(r => r.json())
      .then(data => {{ if (data.success) location.reload(); else alert(data.message); }});
  }}));
  </script>
</body>
</html>"""
