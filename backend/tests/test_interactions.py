import unittest

import httpx

from curesync.core.interactions import check_drug_interaction, find_mentions

LABEL = {
    "results": [
        {
            "drug_interactions": [
                "Concomitant use with warfarin may increase the risk of bleeding. "
                "Monitor INR closely."
            ],
            "warnings": "Avoid alcohol.",
        }
    ]
}


def client_for(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestFindMentions(unittest.TestCase):
    def test_whole_word_match_with_context(self):
        [result] = find_mentions("Aspirin", "use with warfarin may increase bleeding", ["Warfarin"])
        self.assertEqual(result.status, "warning")
        self.assertEqual(result.severity, "moderate")
        self.assertEqual((result.drug_a, result.drug_b), ("Aspirin", "Warfarin"))
        self.assertIn("warfarin may increase", result.message)

    def test_partial_word_is_not_a_match(self):
        [result] = find_mentions("Aspirin", "contains ironic text", ["Iron"])
        self.assertEqual(result.status, "safe")

    def test_multi_word_name_without_spaces(self):
        results = find_mentions("Aspirin", "interacts with vitamink supplements", ["Vitamin K"])
        self.assertEqual(results[0].status, "warning")


class TestCheckDrugInteraction(unittest.IsolatedAsyncioTestCase):
    async def test_no_existing_medications(self):
        [result] = await check_drug_interaction("Aspirin", [])
        self.assertEqual(result.status, "safe")

    async def test_warning_from_label(self):
        seen = {}

        def handler(request):
            seen["search"] = request.url.params["search"]
            return httpx.Response(200, json=LABEL)

        async with client_for(handler) as client:
            results = await check_drug_interaction("Aspirin", ["Warfarin", "Metformin"], client=client)

        self.assertIn('openfda.brand_name:"Aspirin"', seen["search"])
        self.assertEqual([r.status for r in results], ["warning"])
        self.assertEqual(results[0].drug_b, "Warfarin")

    async def test_not_found_is_unknown(self):
        async with client_for(lambda request: httpx.Response(404)) as client:
            [result] = await check_drug_interaction("Madeupol", ["Warfarin"], client=client)
        self.assertEqual(result.status, "unknown")
        self.assertIn("Madeupol", result.message)

    async def test_empty_results_is_unknown(self):
        async with client_for(lambda request: httpx.Response(200, json={"results": []})) as client:
            [result] = await check_drug_interaction("Aspirin", ["Warfarin"], client=client)
        self.assertEqual(result.status, "unknown")

    async def test_server_error_is_unknown(self):
        async with client_for(lambda request: httpx.Response(503)) as client:
            [result] = await check_drug_interaction("Aspirin", ["Warfarin"], client=client)
        self.assertEqual(result.status, "unknown")
        self.assertIn("503", result.message)

    async def test_network_failure_is_unknown(self):
        def handler(request):
            raise httpx.ConnectError("no route to host", request=request)

        async with client_for(handler) as client:
            with self.assertLogs("curesync.core.interactions", level="WARNING"):
                [result] = await check_drug_interaction("Aspirin", ["Warfarin"], client=client)
        self.assertEqual(result.status, "unknown")

    async def test_bad_json_is_unknown(self):
        async with client_for(lambda request: httpx.Response(200, content=b"<html>")) as client:
            with self.assertLogs("curesync.core.interactions", level="WARNING"):
                [result] = await check_drug_interaction("Aspirin", ["Warfarin"], client=client)
        self.assertEqual(result.status, "unknown")


if __name__ == "__main__":
    unittest.main()
