import pytest

COUNTER = """
(define-data-var counter uint u0)
(define-map balances principal uint)
(define-constant owner tx-sender)
(define-constant err-owner (err u100))

(define-read-only (get-counter)
  (var-get counter))

(define-public (increment (by uint))
  (begin
    (asserts! (is-eq tx-sender owner) err-owner)
    (var-set counter (+ (var-get counter) by))
    (ok (var-get counter))))

(define-public (deposit (amount uint))
  (let ((current (default-to u0 (map-get? balances tx-sender))))
    (map-set balances tx-sender (+ current amount))
    (ok amount)))

(define-private (double (x int))
  (* x 2))

(define-read-only (twice (xs (list 10 int)))
  (map double xs))

(define-read-only (greet (name (string-ascii 20)))
  (concat "hello " name))
"""

ARITHMETIC = """
(define-read-only (calc (a int) (b int))
  (if (> a b) (- a b) (* (/ a (+ b 1)) (mod a 7))))

(define-read-only (to-u (a int))
  (to-uint a))

(define-read-only (find (xs (list 5 uint)) (x uint))
  (index-of xs x))

(define-read-only (total (xs (list 5 uint)))
  (fold + xs u0))

(define-read-only (evens (xs (list 8 int)))
  (filter is-even xs))

(define-private (is-even (x int))
  (is-eq (mod x 2) 0))
"""

TOKENS = """
(define-fungible-token gold u1000000)
(define-non-fungible-token ticket uint)

(define-public (mint (amount uint) (to principal))
  (ft-mint? gold amount to))

(define-public (issue (id uint) (to principal))
  (nft-mint? ticket id to))

(define-read-only (owner-of (id uint))
  (nft-get-owner? ticket id))

(define-read-only (balance (who principal))
  (ft-get-balance gold who))
"""

RESPONSES = """
(define-map profiles uint {name: (string-utf8 16), score: int})

(define-private (check-positive (n int))
  (if (> n 0) (ok n) (err u1)))

(define-public (register (id uint) (name (string-utf8 16)) (score int))
  (let ((checked (try! (check-positive score))))
    (ok (map-insert profiles id {name: name, score: checked}))))

(define-read-only (score-of (id uint))
  (match (map-get? profiles id)
    profile (ok (get score profile))
    (err u404)))

(define-read-only (name-or-default (id uint))
  (default-to u"anonymous" (get name (map-get? profiles id))))

(define-read-only (digest (data (buff 64)))
  (sha256 data))

(define-read-only (pick (xs (list 4 (buff 2))) (i uint))
  (unwrap-panic (element-at? xs i)))
"""

BLOCKS = """
(define-data-var last uint u0)

(define-read-only (block-time (h uint))
  (get-block-info? time h))

(define-read-only (pox (h uint))
  (get-burn-block-info? pox-addrs h))

(define-read-only (past-value (hash (buff 32)))
  (at-block hash (var-get last)))

(define-read-only (decode (b (buff 16)))
  (buff-to-uint-le b))

(define-read-only (decode-signed (b (buff 8)))
  (buff-to-int-be b))

(define-public (as-self)
  (as-contract (ok tx-sender)))
"""

CORPUS = {
    "blocks": BLOCKS,
    "counter": COUNTER,
    "arithmetic": ARITHMETIC,
    "tokens": TOKENS,
    "responses": RESPONSES,
}


@pytest.fixture(params=sorted(CORPUS))
def contract_source(request):
    return request.param, CORPUS[request.param]
