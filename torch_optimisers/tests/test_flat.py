import unittest

import torch

from torch_optimisers.flat import (
    add_flat,
    clone_params,
    flat_grads,
    flatten_params,
    gather_flat,
    set_params,
    unflatten,
    unflatten_and_apply,
)


class TestFlat(unittest.TestCase):
    def setUp(self):
        self.params = [
            torch.arange(6, dtype=torch.float64).reshape(2, 3).requires_grad_(),
            torch.tensor([10.0, 11.0], dtype=torch.float64, requires_grad=True),
            torch.tensor(12.0, dtype=torch.float64, requires_grad=True),
        ]

    def test_flatten_unflatten_round_trip(self):
        flat = flatten_params(self.params)
        self.assertEqual(flat.shape, (9,))
        self.assertTrue(torch.equal(flat, torch.tensor([0, 1, 2, 3, 4, 5, 10, 11, 12], dtype=torch.float64)))

        views = unflatten(flat, self.params)
        for view, p in zip(views, self.params):
            self.assertEqual(view.shape, p.shape)
            self.assertTrue(torch.equal(view, p.detach()))

    def test_missing_gradient_is_zero_filled(self):
        g = torch.ones(2, 3, dtype=torch.float64)
        flat = gather_flat([g, None, torch.tensor(5.0, dtype=torch.float64)], self.params)
        expected = torch.tensor([1, 1, 1, 1, 1, 1, 0, 0, 5], dtype=torch.float64)
        self.assertTrue(torch.equal(flat, expected))

    def test_gather_count_mismatch(self):
        with self.assertRaises(ValueError):
            gather_flat([None, None], self.params)

    def test_unflatten_length_mismatch(self):
        with self.assertRaises(ValueError):
            unflatten(torch.zeros(8, dtype=torch.float64), self.params)

    def test_apply_mismatch_leaves_params_untouched(self):
        before = clone_params(self.params)
        with self.assertRaises(ValueError):
            add_flat(self.params, torch.ones(10, dtype=torch.float64))
        for p, b in zip(self.params, before):
            self.assertTrue(torch.equal(p.detach(), b))

    def test_unflatten_and_apply_visits_in_order(self):
        seen = []
        unflatten_and_apply(
            torch.arange(9, dtype=torch.float64),
            self.params,
            lambda p, seg: seen.append(seg.clone()),
        )
        self.assertEqual([s.shape for s in seen], [p.shape for p in self.params])
        self.assertTrue(torch.equal(seen[1], torch.tensor([6.0, 7.0], dtype=torch.float64)))

    def test_add_flat_subtracts_with_negative_alpha(self):
        add_flat(self.params, torch.ones(9, dtype=torch.float64), alpha=-1.0)
        self.assertTrue(torch.equal(self.params[2].detach(), torch.tensor(11.0, dtype=torch.float64)))
        self.assertTrue(torch.equal(self.params[0].detach()[0], torch.tensor([-1.0, 0.0, 1.0], dtype=torch.float64)))

    def test_clone_and_set_restore(self):
        saved = clone_params(self.params)
        add_flat(self.params, torch.full((9,), 3.0, dtype=torch.float64))
        set_params(self.params, saved)
        for p, s in zip(self.params, saved):
            self.assertTrue(torch.equal(p.detach(), s))

    def test_flat_grads(self):
        x, y, z = self.params
        loss = (x**2).sum() / 2 + 3 * z
        flat = flat_grads(self.params, loss)
        expected = torch.cat([x.detach().reshape(-1), torch.zeros(2, dtype=torch.float64), torch.tensor([3.0], dtype=torch.float64)])
        self.assertTrue(torch.allclose(flat, expected))
        self.assertIsNone(x.grad)

    def test_flat_grads_weight_decay(self):
        x, y, z = self.params
        loss = 3 * z
        flat = flat_grads(self.params, loss, weight_decay=0.5)
        expected = 0.5 * flatten_params(self.params)
        expected[-1] += 3.0
        self.assertTrue(torch.allclose(flat, expected))


if __name__ == "__main__":
    unittest.main()
