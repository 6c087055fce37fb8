from faker import Faker
from faker.providers import BaseProvider

class KardexProvider(BaseProvider):
    """
    KARDEX 演示数据生成器
    生成五金/杂货门店常见的商品、分类和供应商名称
    """

    # 商品名前缀
    product_nouns = [
        'Tornillo', 'Taquete', 'Clavo', 'Cinta', 'Pintura', 'Brocha', 'Foco',
        'Cable', 'Manguera', 'Llave', 'Candado', 'Pegamento', 'Lija', 'Guante',
        'Detergente', 'Aceite', 'Foco LED', 'Extensión', 'Rodillo', 'Silicón'
    ]

    # 规格
    product_specs = [
        '1/4"', '3/8"', '1/2"', '2 m', '5 m', '10 m', '1 L', '4 L', '19 L',
        'chico', 'mediano', 'grande', '60 W', '100 W', 'blanco', 'negro'
    ]

    categories = [
        'Ferretería', 'Pinturas', 'Electricidad', 'Plomería', 'Limpieza',
        'Jardinería', 'Seguridad', 'Herramientas'
    ]

    company_suffixes = ['Distribuidora', 'Comercializadora', 'Importadora', 'Mayoreo', 'Suministros']

    def product_name(self):
        return f"{self.random_element(self.product_nouns)} {self.random_element(self.product_specs)}"

    def product_category(self):
        return self.random_element(self.categories)

    def supplier_name(self):
        return f"{self.random_element(self.company_suffixes)} {self.generator.last_name()}"

    def product_sku(self, index):
        return f"{self.generator.lexify('???').upper()}-{index:05d}"

# 初始化 Faker 并添加自定义 Provider
fake = Faker('es_MX')
fake.add_provider(KardexProvider)
