"""HTML pages used by the scoring tests."""

# Passes every SEO, accessibility and UX check; trust passes on https URLs
SAMPLE_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>Acme Analytics - Revenue reporting for SaaS teams</title>
  <meta name="description"
        content="Acme Analytics gives SaaS finance teams accurate revenue reporting in minutes, not days.">
  <link rel="canonical" href="https://acme.example/">
  <link rel="icon" href="/favicon.ico">
  <meta property="og:title" content="Acme Analytics">
  <script type="application/ld+json">{"@type": "Organization", "name": "Acme Analytics"}</script>
</head>
<body>
  <header>
    <nav>
      <a href="/product">Product</a>
      <a href="/pricing">Pricing</a>
      <a href="/customers">Customers</a>
      <a href="/contact">Contact</a>
    </nav>
  </header>
  <main>
    <h1>Revenue reporting for SaaS finance teams</h1>
    <p>
      Acme Analytics connects to your billing system and your general ledger and turns
      them into one set of revenue numbers that finance, sales and the board can agree on.
      Monthly recurring revenue, churn, expansion and deferred revenue are calculated the
      same way every time, so the close takes hours instead of a week. Trusted by 500+
      companies, from seed stage startups to public software businesses.
    </p>
    <a href="/demo">Book a demo</a>
    <h2>What our customers say</h2>
    <p>
      Finance leaders tell us the biggest change is confidence. When the numbers in the
      board deck match the numbers in the billing system, meetings are about decisions and
      not about reconciling spreadsheets. Our team of revenue accountants helps every new
      customer map their contracts, and the first report is usually ready within two weeks
      of signing. We are SOC 2 certified and audited every year.
    </p>
    <img src="/img/globex-logo.png" alt="Globex logo">
    <img src="/img/initech-logo.png" alt="Initech logo">
    <img src="/img/umbrella-logo.png" alt="Umbrella logo">
    <h2>Case studies</h2>
    <p>
      Read how a payments company cut its month end close from nine days to three, and how
      a developer tools business found the pricing plan that was quietly losing money on
      every renewal. Each story walks through the data they started with, the reports they
      built and the results they measured over the following year.
    </p>
    <form>
      <label for="email">Work email</label>
      <input id="email" type="email" name="email">
      <button type="submit">Get started</button>
    </form>
  </main>
  <footer>
    <a href="/privacy">Privacy policy</a>
    <a href="mailto:hello@acme.example">Email us</a>
    <a href="https://www.linkedin.com/company/acme-analytics">LinkedIn</a>
  </footer>
</body>
</html>
"""

# Fails most checks: no lang, no landmarks, unlabelled image, skipped heading level
BARE_HTML = """<html>
<body>
  <img src="hero.png">
  <a href="/somewhere"></a>
  <h1>Welcome</h1>
  <h3>Our revolutionary, cutting-edge, innovative, transformative platform</h3>
</body>
</html>
"""
