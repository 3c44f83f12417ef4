"""Auto-submitting HTML pages used to hand the browser over to a bank's 3-D page."""

from html import escape
from typing import Mapping

_PAGE = """<!DOCTYPE html>
<html>
<head>
	<title>3D Secure Authentication</title>
	<meta charset="utf-8">
	<meta http-equiv="Content-Type" content="text/html; charset=UTF-8">
</head>
<body onload="document.threeDForm.submit();">
	<div style="text-align: center; margin-top: 50px;">
		<p>Ödeme işleminiz 3D güvenlik sayfasına yönlendiriliyor...</p>
		<p>Payment is being redirected to 3D secure page...</p>
	</div>
	<form id="threeDForm" name="threeDForm" method="POST" action="{action}">
{fields}
	</form>
	<noscript><button form="threeDForm" type="submit">Continue</button></noscript>
</body>
</html>"""


def render_autosubmit_form(action: str, fields: Mapping[str, str]) -> str:
    """Render a hidden form that posts ``fields`` to ``action`` on load.

    Values are attribute-escaped only; the browser decodes them back to the
    exact strings that were signed.
    """
    inputs = "\n".join(
        f'\t\t<input type="hidden" name="{escape(name, quote=True)}" value="{escape(value, quote=True)}" />'
        for name, value in fields.items()
    )
    return _PAGE.format(action=escape(action, quote=True), fields=inputs)
